import asyncio

import pytest

import onesheet_brainstorm.orchestrator as orchestrator_module
from onesheet_brainstorm.errors import AlreadyRunning, RunPreconditionFailed
from onesheet_brainstorm.models import AdAuditFlags, ContextFlags, HookSet
from onesheet_brainstorm.orchestrator import GenerationOrchestrator, RunRegistry
from onesheet_brainstorm.tracker import ProgressTracker

from conftest import MODEL, TARGET, CrashingStore, FailingStore

STAGE_ORDER = ["concepts", "iterations", "hooks", "visuals", "practices"]


def _statuses(result):
    return [s.status for s in result.snapshot.stages]


class RecordingTracker(ProgressTracker):
    """Logs every status each stage passes through."""

    history: dict[str, list[str]] = {}

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        RecordingTracker.history = {sid: ["pending"] for sid in STAGE_ORDER}

    def start(self, stage_id):
        super().start(stage_id)
        self.history[stage_id].append("in_progress")

    def complete(self, stage_id, payload):
        super().complete(stage_id, payload)
        self.history[stage_id].append("completed")

    def fail(self, stage_id, error_detail):
        super().fail(stage_id, error_detail)
        self.history[stage_id].append("error")


# --- Full runs ---


@pytest.mark.asyncio
async def test_all_stages_succeed(orchestrator, provider, store, make_request, full_flags):
    result = await orchestrator.run(make_request(context_flags=full_flags))

    assert _statuses(result) == ["completed"] * 5
    assert result.snapshot.done
    assert provider.called_stages() == STAGE_ORDER

    agg = result.aggregate
    assert agg.concepts and agg.iterations and agg.visuals
    assert agg.hooks.visual and agg.hooks.audio
    assert agg.best_practices.dos

    assert result.persisted
    assert result.storage_error is None
    assert await store.load(TARGET) == agg


@pytest.mark.asyncio
async def test_hooks_timeout_does_not_abort_run(provider, sources, store, make_request):
    async def hang(_context):
        await asyncio.sleep(5)

    provider.script["hooks"] = hang
    orch = GenerationOrchestrator(provider, sources, store, timeout_s=0.05)

    result = await orch.run(make_request())

    assert _statuses(result) == ["completed", "completed", "error", "completed", "completed"]
    assert result.aggregate.hooks == HookSet()
    assert result.aggregate.hooks.model_dump() == {"visual": [], "audio": []}
    assert "timed out" in result.snapshot.stages[2].error_detail
    assert result.persisted


@pytest.mark.asyncio
async def test_failed_stage_keeps_typed_empty_value(provider, orchestrator, make_request):
    provider.script["practices"] = {"best_practices": "not an object"}
    provider.script["concepts"] = RuntimeError("upstream 502")

    result = await orchestrator.run(make_request())

    assert _statuses(result) == ["error", "completed", "completed", "completed", "error"]
    dumped = result.aggregate.model_dump()
    assert set(dumped) == {"concepts", "iterations", "hooks", "visuals", "best_practices"}
    assert dumped["concepts"] == []
    assert dumped["best_practices"] == {"dos": [], "donts": [], "key_learnings": [], "recommendations": []}


@pytest.mark.asyncio
async def test_later_stages_run_after_every_failure(provider, orchestrator, make_request):
    for stage_id in STAGE_ORDER:
        provider.script[stage_id] = ConnectionError("down")

    result = await orchestrator.run(make_request())

    assert provider.called_stages() == STAGE_ORDER
    assert _statuses(result) == ["error"] * 5
    assert result.snapshot.done


@pytest.mark.asyncio
async def test_status_transitions_are_monotonic(monkeypatch, provider, orchestrator, make_request):
    monkeypatch.setattr(orchestrator_module, "ProgressTracker", RecordingTracker)
    provider.script["iterations"] = ValueError("not json")

    await orchestrator.run(make_request())

    for stage_id, seen in RecordingTracker.history.items():
        assert seen in (["pending", "in_progress", "completed"], ["pending", "in_progress", "error"]), stage_id
    assert RecordingTracker.history["iterations"][-1] == "error"


@pytest.mark.asyncio
async def test_dangling_concept_links_dropped_from_aggregate(orchestrator, make_request):
    result = await orchestrator.run(make_request())

    assert result.aggregate.hooks.visual[0].concept_id == "c1"
    assert result.aggregate.hooks.audio[0].concept_id is None
    assert result.aggregate.visuals[0].concept_id == "c1"


@pytest.mark.asyncio
async def test_hooks_see_concepts_from_this_run(provider, orchestrator, make_request):
    await orchestrator.run(make_request())

    hooks_context = provider.calls[2][2]
    assert hooks_context.stage_id == "hooks"
    assert [c["id"] for c in hooks_context.references["concepts"]][0] == "c1"
    assert provider.calls[2][1] == MODEL


# --- Preconditions and locking ---


@pytest.mark.asyncio
async def test_selected_ads_only_without_selection_is_rejected(provider, orchestrator, store, make_request):
    request = make_request(context_flags=ContextFlags(ad_audit=AdAuditFlags(selected_ads_only=True)))

    with pytest.raises(RunPreconditionFailed):
        await orchestrator.run(request)

    assert provider.calls == []
    assert await store.load(TARGET) is None
    assert not orchestrator.is_running(TARGET)


@pytest.mark.asyncio
async def test_second_run_on_same_target_is_refused(provider, orchestrator, make_request):
    gate = asyncio.Event()
    entered = asyncio.Event()

    async def wait_for_gate(_context):
        entered.set()
        await gate.wait()
        return {"concepts": [{"title": "A"}]}

    provider.script["concepts"] = wait_for_gate

    first = asyncio.create_task(orchestrator.run(make_request()))
    await entered.wait()

    with pytest.raises(AlreadyRunning):
        await orchestrator.run(make_request())

    gate.set()
    result = await first

    assert _statuses(result) == ["completed"] * 5
    assert provider.called_stages() == STAGE_ORDER
    assert not orchestrator.is_running(TARGET)


@pytest.mark.asyncio
async def test_different_targets_run_concurrently(provider, orchestrator, make_request):
    results = await asyncio.gather(
        orchestrator.run(make_request(target_id="os-a")),
        orchestrator.run(make_request(target_id="os-b")),
    )
    assert {r.target_id for r in results} == {"os-a", "os-b"}
    assert all(r.persisted for r in results)


@pytest.mark.asyncio
async def test_lock_released_after_run(orchestrator, make_request):
    await orchestrator.run(make_request())
    result = await orchestrator.run(make_request())
    assert result.persisted


# --- Context failures, storage, cancellation ---


@pytest.mark.asyncio
async def test_context_error_fails_stage_without_provider_call(provider, orchestrator, make_request):
    request = make_request(
        context_flags=ContextFlags(ad_audit=AdAuditFlags(selected_ads_only=True)),
        evidence_selection=frozenset({"ad-404"}),
    )

    result = await orchestrator.run(request)

    assert provider.calls == []
    assert _statuses(result) == ["error"] * 5
    assert "none of the selected ads" in result.snapshot.stages[0].error_detail


@pytest.mark.asyncio
async def test_storage_error_reported_in_result(provider, sources, make_request):
    orch = GenerationOrchestrator(provider, sources, FailingStore(), timeout_s=1.0)

    result = await orch.run(make_request())

    assert not result.persisted
    assert "OneSheet not found" in result.storage_error
    assert result.aggregate.concepts
    assert not orch.is_running(TARGET)


@pytest.mark.asyncio
async def test_unexpected_save_failure_reported_in_result(provider, sources, make_request):
    orch = GenerationOrchestrator(provider, sources, CrashingStore(), timeout_s=1.0)

    result = await orch.run(make_request())

    assert not result.persisted
    assert result.storage_error == "RuntimeError: driver bug"
    assert _statuses(result) == ["completed"] * 5
    assert orch.result(result.run_id) == result
    assert not orch.is_running(TARGET)


@pytest.mark.asyncio
async def test_submitted_run_with_crashing_save_still_finishes(provider, sources, make_request):
    orch = GenerationOrchestrator(provider, sources, CrashingStore(), timeout_s=1.0)

    run_id = await orch.submit(make_request())
    result = await orch.wait(run_id)

    assert orch.result(run_id) == result
    assert not result.persisted
    assert "driver bug" in result.storage_error
    assert not orch.is_running(TARGET)


class CrashingTracker(ProgressTracker):
    def complete(self, stage_id, payload):
        if stage_id == "hooks":
            raise RuntimeError("tracker exploded")
        super().complete(stage_id, payload)


@pytest.mark.asyncio
async def test_crashed_background_run_records_partial_result(monkeypatch, orchestrator, make_request):
    monkeypatch.setattr(orchestrator_module, "ProgressTracker", CrashingTracker)

    run_id = await orchestrator.submit(make_request())
    result = await orchestrator.wait(run_id)

    assert orchestrator.result(run_id) == result
    assert not result.persisted
    assert result.storage_error == "Run crashed: RuntimeError: tracker exploded"
    assert _statuses(result) == ["completed", "completed", "error", "error", "error"]
    assert result.snapshot.done
    assert result.aggregate.concepts and result.aggregate.iterations
    assert result.aggregate.hooks == HookSet()
    assert not orchestrator.is_running(TARGET)


@pytest.mark.asyncio
async def test_cancel_finishes_current_stage_then_stops(provider, orchestrator, store, make_request):
    cancel = asyncio.Event()

    def cancel_during_concepts(_context):
        cancel.set()
        return {"concepts": [{"title": "Kept"}]}

    provider.script["concepts"] = cancel_during_concepts

    result = await orchestrator.run(make_request(), cancel=cancel)

    assert result.cancelled
    assert provider.called_stages() == ["concepts"]
    assert _statuses(result) == ["completed", "pending", "pending", "pending", "pending"]
    assert result.snapshot.done
    assert result.aggregate.concepts[0].title == "Kept"
    assert not result.persisted
    assert await store.load(TARGET) is None


# --- Background runs and polling ---


@pytest.mark.asyncio
async def test_submit_then_poll(orchestrator, make_request):
    run_id = await orchestrator.submit(make_request())

    assert orchestrator.snapshot(run_id) is not None
    result = await orchestrator.wait(run_id)

    assert result.run_id == run_id
    assert orchestrator.result(run_id) == result
    assert orchestrator.snapshot(run_id).done
    assert not orchestrator.is_running(TARGET)


@pytest.mark.asyncio
async def test_submit_rejects_synchronously(orchestrator, make_request):
    request = make_request(context_flags=ContextFlags(ad_audit=AdAuditFlags(selected_ads_only=True)))
    with pytest.raises(RunPreconditionFailed):
        await orchestrator.submit(request)


@pytest.mark.asyncio
async def test_cancel_submitted_run(provider, orchestrator, make_request):
    gate = asyncio.Event()
    entered = asyncio.Event()

    async def wait_for_gate(_context):
        entered.set()
        await gate.wait()
        return {"iterations": []}

    provider.script["iterations"] = wait_for_gate

    run_id = await orchestrator.submit(make_request())
    await entered.wait()
    assert orchestrator.cancel(run_id)
    gate.set()

    result = await orchestrator.wait(run_id)
    assert result.cancelled
    assert _statuses(result)[:2] == ["completed", "completed"]
    assert _statuses(result)[2:] == ["pending"] * 3
    assert not orchestrator.cancel(run_id)


def test_unknown_run_id(orchestrator):
    assert orchestrator.snapshot("nope") is None
    assert orchestrator.result("nope") is None
    assert not orchestrator.cancel("nope")


@pytest.mark.asyncio
async def test_registry_keeps_bounded_history(provider, sources, store, make_request):
    orch = GenerationOrchestrator(provider, sources, store, registry=RunRegistry(retained=2))

    results = [await orch.run(make_request()) for _ in range(3)]

    assert orch.result(results[0].run_id) is None
    assert orch.snapshot(results[0].run_id) is None
    assert orch.result(results[2].run_id) is not None
