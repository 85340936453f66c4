"""Progress Tracker — per-run stage state machine.

Pure state container, no I/O. Transitions are one-way:

    pending → in_progress → completed | error

and at most one stage is in_progress at a time. Illegal transitions raise
ProgressError; they indicate a bug in the caller, not a runtime condition.
"""

from __future__ import annotations

from datetime import datetime, timezone

from onesheet_brainstorm.errors import ProgressError
from onesheet_brainstorm.models import RunSnapshot, StageId, StageOutcome, StagePayload
from onesheet_brainstorm.stages import STAGES, StageDefinition, ordered


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProgressTracker:
    def __init__(
        self,
        run_id: str,
        target_id: str,
        stages: tuple[StageDefinition, ...] = STAGES,
    ):
        self.run_id = run_id
        self.target_id = target_id
        self._outcomes: dict[str, StageOutcome] = {
            s.id: StageOutcome(stage_id=s.id) for s in ordered(stages)
        }
        self._active: StageId | None = None
        self.cancelled = False

    @property
    def active_stage_id(self) -> StageId | None:
        return self._active

    @property
    def done(self) -> bool:
        return all(o.status in ("completed", "error") for o in self._outcomes.values())

    def _get(self, stage_id: str) -> StageOutcome:
        try:
            return self._outcomes[stage_id]
        except KeyError:
            raise ProgressError(f"Unknown stage '{stage_id}' for run {self.run_id}") from None

    def _require_active(self, stage_id: str) -> StageOutcome:
        outcome = self._get(stage_id)
        if outcome.status != "in_progress" or self._active != stage_id:
            raise ProgressError(
                f"Stage '{stage_id}' is {outcome.status}, expected in_progress"
            )
        return outcome

    def start(self, stage_id: StageId) -> None:
        outcome = self._get(stage_id)
        if outcome.status != "pending":
            raise ProgressError(f"Stage '{stage_id}' is {outcome.status}, expected pending")
        if self._active is not None:
            raise ProgressError(
                f"Cannot start '{stage_id}' while '{self._active}' is in progress"
            )
        outcome.status = "in_progress"
        outcome.started_at = _now()
        self._active = stage_id

    def complete(self, stage_id: StageId, payload: StagePayload) -> None:
        outcome = self._require_active(stage_id)
        outcome.payload = payload
        outcome.status = "completed"
        outcome.finished_at = _now()
        self._active = None

    def fail(self, stage_id: StageId, error_detail: str) -> None:
        outcome = self._require_active(stage_id)
        outcome.error_detail = error_detail
        outcome.status = "error"
        outcome.finished_at = _now()
        self._active = None

    def completed_payloads(self) -> dict[str, StagePayload]:
        """Payloads of stages that finished successfully, keyed by stage id."""
        return {
            sid: o.payload
            for sid, o in self._outcomes.items()
            if o.status == "completed" and o.payload is not None
        }

    def snapshot(self) -> RunSnapshot:
        """Read-only copy of the run state, safe to hand to pollers mid-run."""
        return RunSnapshot(
            run_id=self.run_id,
            target_id=self.target_id,
            stages=[o.model_copy(deep=True) for o in self._outcomes.values()],
            active_stage_id=self._active,
            cancelled=self.cancelled,
        )
