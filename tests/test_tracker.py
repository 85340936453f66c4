import pytest

from onesheet_brainstorm.errors import ProgressError
from onesheet_brainstorm.models import ConceptsPayload
from onesheet_brainstorm.tracker import ProgressTracker


def _payload():
    return ConceptsPayload.model_validate({"concepts": [{"title": "A"}]})


def test_new_run_is_all_pending():
    t = ProgressTracker("run-1", "os-1")
    snap = t.snapshot()
    assert [s.stage_id for s in snap.stages] == ["concepts", "iterations", "hooks", "visuals", "practices"]
    assert all(s.status == "pending" for s in snap.stages)
    assert snap.active_stage_id is None
    assert not snap.done


def test_start_complete_sets_payload_and_clears_active():
    t = ProgressTracker("run-1", "os-1")
    t.start("concepts")
    assert t.active_stage_id == "concepts"
    t.complete("concepts", _payload())

    outcome = t.snapshot().stages[0]
    assert outcome.status == "completed"
    assert outcome.payload.concepts[0].title == "A"
    assert outcome.started_at is not None and outcome.finished_at is not None
    assert t.active_stage_id is None


def test_fail_records_detail():
    t = ProgressTracker("run-1", "os-1")
    t.start("hooks")
    t.fail("hooks", "timed out")
    hooks = [s for s in t.snapshot().stages if s.stage_id == "hooks"][0]
    assert hooks.status == "error"
    assert hooks.error_detail == "timed out"
    assert hooks.payload is None


def test_only_one_stage_in_progress():
    t = ProgressTracker("run-1", "os-1")
    t.start("concepts")
    with pytest.raises(ProgressError):
        t.start("hooks")


def test_cannot_restart_finished_stage():
    t = ProgressTracker("run-1", "os-1")
    t.start("concepts")
    t.fail("concepts", "boom")
    with pytest.raises(ProgressError):
        t.start("concepts")


def test_complete_requires_in_progress():
    t = ProgressTracker("run-1", "os-1")
    with pytest.raises(ProgressError):
        t.complete("concepts", _payload())
    with pytest.raises(ProgressError):
        t.fail("visuals", "nope")


def test_unknown_stage_rejected():
    t = ProgressTracker("run-1", "os-1")
    with pytest.raises(ProgressError):
        t.start("scripts")


def test_done_after_every_stage_finishes():
    t = ProgressTracker("run-1", "os-1")
    for stage_id in ("concepts", "iterations", "hooks", "visuals", "practices"):
        t.start(stage_id)
        t.fail(stage_id, "x")
    assert t.done
    assert t.snapshot().done


def test_snapshot_is_detached_from_tracker_state():
    """Mutating a snapshot must not leak back into the run."""
    t = ProgressTracker("run-1", "os-1")
    t.start("concepts")
    t.complete("concepts", _payload())

    snap = t.snapshot()
    snap.stages[0].payload.concepts[0].title = "changed"
    snap.stages[1].status = "completed"

    fresh = t.snapshot()
    assert fresh.stages[0].payload.concepts[0].title == "A"
    assert fresh.stages[1].status == "pending"


def test_completed_payloads_only_successful_stages():
    t = ProgressTracker("run-1", "os-1")
    t.start("concepts")
    t.complete("concepts", _payload())
    t.start("iterations")
    t.fail("iterations", "bad")
    assert list(t.completed_payloads()) == ["concepts"]


def test_cancelled_snapshot_counts_as_done():
    t = ProgressTracker("run-1", "os-1")
    t.start("concepts")
    t.complete("concepts", _payload())
    t.cancelled = True
    snap = t.snapshot()
    assert snap.cancelled
    assert snap.done
