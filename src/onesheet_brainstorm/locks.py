"""Per-OneSheet run lock: at most one active generation per target.

Acquisition never waits. A second run for a held target is refused so the
caller can poll the active run instead.
"""

from __future__ import annotations


class RunLocks:
    def __init__(self):
        self._held: set[str] = set()

    def try_acquire(self, target_id: str) -> bool:
        # No await between the check and the add, so this is atomic on the event loop
        if target_id in self._held:
            return False
        self._held.add(target_id)
        return True

    def release(self, target_id: str) -> None:
        self._held.discard(target_id)

    def is_held(self, target_id: str) -> bool:
        return target_id in self._held
