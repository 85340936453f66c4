"""Exception taxonomy for the generation pipeline.

Only precondition and lock-contention failures deny a run outright. Provider
failures never surface as exceptions; the invoker returns them as
`ProviderError` values (see models.py) and the orchestrator records them in
the run snapshot.
"""

from __future__ import annotations


class ContextError(Exception):
    """The Context Assembler could not build a stage payload."""


class PreconditionFailed(ContextError):
    """The request's ad selection is inconsistent with its flags."""


class OrchestratorError(Exception):
    """Base class for errors that deny a run."""


class AlreadyRunning(OrchestratorError):
    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(f"A generation run is already active for onesheet {target_id}")


class RunPreconditionFailed(OrchestratorError):
    def __init__(self, target_id: str, reason: str):
        self.target_id = target_id
        self.reason = reason
        super().__init__(f"Precondition failed for onesheet {target_id}: {reason}")


class StorageError(Exception):
    """The Document Store rejected a read or write."""


class ProgressError(RuntimeError):
    """Illegal Progress Tracker transition (programmer error)."""
