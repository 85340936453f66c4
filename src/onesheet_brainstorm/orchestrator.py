"""Generation Orchestrator — drives the creative brainstorm stages for a OneSheet.

Stages run sequentially in their fixed order. A failed stage is recorded in
the run's progress and the run moves on: callers always get the best
achievable aggregate rather than all-or-nothing. Only lock contention and
request preconditions deny a run.

Two entry points:
    run()     — await the whole run and get the RunResult back.
    submit()  — validate and lock synchronously, then run the stages in a
                background task; poll snapshot(run_id) / result(run_id).
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict
from types import MappingProxyType

from onesheet_brainstorm.aggregate import empty_aggregate, merge_payload
from onesheet_brainstorm.config import settings
from onesheet_brainstorm.context import ContextAssembler
from onesheet_brainstorm.errors import (
    AlreadyRunning,
    ContextError,
    PreconditionFailed,
    RunPreconditionFailed,
    StorageError,
)
from onesheet_brainstorm.invoker import StageInvoker
from onesheet_brainstorm.locks import RunLocks
from onesheet_brainstorm.models import GenerationRequest, ProviderError, RunResult, RunSnapshot
from onesheet_brainstorm.provider import GenerationProvider
from onesheet_brainstorm.research import CachedResearchSources, ResearchSources
from onesheet_brainstorm.stages import STAGES, StageDefinition, ordered
from onesheet_brainstorm.store import DocumentStore
from onesheet_brainstorm.tracker import ProgressTracker
from onesheet_brainstorm.utils.logging import BOLD, DIM, GREEN, RED, RESET, YELLOW, get_logger

log = get_logger()


class RunRegistry:
    """Active and recently finished runs, addressable by run id for polling."""

    def __init__(self, retained: int | None = None):
        self._retained = retained if retained is not None else settings.retained_runs
        self._trackers: dict[str, ProgressTracker] = {}
        self._results: OrderedDict[str, RunResult] = OrderedDict()

    def register(self, tracker: ProgressTracker) -> None:
        self._trackers[tracker.run_id] = tracker

    def finish(self, result: RunResult) -> None:
        self._results[result.run_id] = result
        while len(self._results) > self._retained:
            old_id, _ = self._results.popitem(last=False)
            self._trackers.pop(old_id, None)

    def tracker(self, run_id: str) -> ProgressTracker | None:
        return self._trackers.get(run_id)

    def result(self, run_id: str) -> RunResult | None:
        return self._results.get(run_id)


class GenerationOrchestrator:
    def __init__(
        self,
        provider: GenerationProvider,
        sources: ResearchSources,
        store: DocumentStore,
        *,
        stages: tuple[StageDefinition, ...] = STAGES,
        assembler: ContextAssembler | None = None,
        invoker: StageInvoker | None = None,
        locks: RunLocks | None = None,
        registry: RunRegistry | None = None,
        timeout_s: float | None = None,
    ):
        self._sources = sources
        self._store = store
        self._stages = tuple(ordered(stages))
        self._assembler = assembler or ContextAssembler()
        self._invoker = invoker or StageInvoker(provider, timeout_s=timeout_s)
        self._locks = locks or RunLocks()
        self._registry = registry or RunRegistry()
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancels: dict[str, asyncio.Event] = {}

    # --- entry points ---

    async def run(
        self,
        request: GenerationRequest,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RunResult:
        """Run every stage for `request` and persist the aggregate.

        Raises AlreadyRunning or RunPreconditionFailed before any stage starts.
        Stage failures never raise; they are in the returned snapshot.
        """
        tracker = self._begin(request)
        try:
            return await self._execute(tracker, request, cancel)
        finally:
            self._locks.release(request.target_id)

    async def submit(
        self,
        request: GenerationRequest,
        *,
        cancel: asyncio.Event | None = None,
    ) -> str:
        """Start a run in the background and return its run id.

        Lock contention and precondition failures raise here, synchronously.
        """
        tracker = self._begin(request)
        run_id = tracker.run_id
        self._cancels[run_id] = cancel or asyncio.Event()

        async def _drive() -> RunResult:
            try:
                return await self._execute(tracker, request, self._cancels[run_id])
            except Exception as e:
                log.exception(f"{RED}✗{RESET} Run {run_id} crashed: {e}")
                return self._abort(tracker, request, e)
            finally:
                self._locks.release(request.target_id)
                self._cancels.pop(run_id, None)

        task = asyncio.create_task(_drive())
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))
        return run_id

    # --- polling ---

    def snapshot(self, run_id: str) -> RunSnapshot | None:
        tracker = self._registry.tracker(run_id)
        return tracker.snapshot() if tracker else None

    def result(self, run_id: str) -> RunResult | None:
        return self._registry.result(run_id)

    def cancel(self, run_id: str) -> bool:
        """Ask a submitted run to stop after its in-progress stage."""
        event = self._cancels.get(run_id)
        if event is None:
            return False
        event.set()
        return True

    async def wait(self, run_id: str) -> RunResult | None:
        """Wait for a submitted run to finish."""
        task = self._tasks.get(run_id)
        if task is not None:
            return await task
        return self._registry.result(run_id)

    def is_running(self, target_id: str) -> bool:
        return self._locks.is_held(target_id)

    # --- internals ---

    def _begin(self, request: GenerationRequest) -> ProgressTracker:
        target = request.target_id
        if not self._locks.try_acquire(target):
            log.warning(f"{YELLOW}–{RESET} Generation already running for onesheet {target}")
            raise AlreadyRunning(target)

        try:
            self._assembler.check_preconditions(request)
        except PreconditionFailed as e:
            self._locks.release(target)
            log.warning(f"{YELLOW}–{RESET} Rejected generation for onesheet {target}: {e}")
            raise RunPreconditionFailed(target, str(e)) from e

        tracker = ProgressTracker(uuid.uuid4().hex, target, self._stages)
        self._registry.register(tracker)
        return tracker

    async def _execute(
        self,
        tracker: ProgressTracker,
        request: GenerationRequest,
        cancel: asyncio.Event | None,
    ) -> RunResult:
        target = request.target_id
        log.info(
            f"{BOLD}BRAINSTORM{RESET} — onesheet {target} "
            f"(run={tracker.run_id}, model={request.model_id})"
        )
        start = time.monotonic()
        aggregate = empty_aggregate()
        sources = CachedResearchSources(self._sources)

        for i, stage in enumerate(self._stages):
            if cancel is not None and cancel.is_set():
                tracker.cancelled = True
                log.warning(f"  {YELLOW}–{RESET} Cancelled before {stage.id}")
                break

            log.info(f"  {DIM}[{i + 1}/{len(self._stages)}] {stage.label or stage.id}...{RESET}")
            tracker.start(stage.id)

            try:
                context = await self._assembler.assemble(stage.id, request, sources)
            except ContextError as e:
                tracker.fail(stage.id, str(e))
                log.error(f"  {RED}✗{RESET} {stage.id}: {e}")
                continue

            prior = MappingProxyType(tracker.completed_payloads())
            result = await self._invoker.invoke(stage, context, request.model_id, prior)

            if isinstance(result, ProviderError):
                tracker.fail(stage.id, result.message)
                log.error(f"  {RED}✗{RESET} {result.message} ({result.kind})")
                continue

            tracker.complete(stage.id, result)
            aggregate = merge_payload(aggregate, stage, result)
            log.info(f"  {GREEN}✓{RESET} {stage.id}")

        persisted = False
        storage_error = None
        if tracker.cancelled:
            log.warning(f"  {YELLOW}–{RESET} Run cancelled, partial brainstorm not saved")
        else:
            try:
                await self._store.save(target, aggregate)
                persisted = True
            except StorageError as e:
                storage_error = str(e)
                log.error(f"  {RED}✗{RESET} Save failed: {e}")
            except Exception as e:
                storage_error = f"{type(e).__name__}: {e}"
                log.exception(f"  {RED}✗{RESET} Save crashed: {storage_error}")

        snapshot = tracker.snapshot()
        failed = sum(1 for s in snapshot.stages if s.status == "error")
        completed = sum(1 for s in snapshot.stages if s.status == "completed")
        log.info(
            f"{GREEN}▸{RESET} Brainstorm finished in {time.monotonic() - start:.1f}s: "
            f"{completed} completed, {failed} failed"
            + ("" if persisted else f" {YELLOW}(not saved){RESET}")
        )

        result = RunResult(
            run_id=tracker.run_id,
            target_id=target,
            aggregate=aggregate,
            snapshot=snapshot,
            persisted=persisted,
            storage_error=storage_error,
            cancelled=tracker.cancelled,
        )
        self._registry.finish(result)
        return result

    def _abort(self, tracker: ProgressTracker, request: GenerationRequest, error: Exception) -> RunResult:
        """Record a result for a background run that crashed mid-flight."""
        if tracker.active_stage_id is not None:
            tracker.fail(tracker.active_stage_id, f"Run crashed: {error}")
        for outcome in tracker.snapshot().stages:
            if outcome.status == "pending":
                tracker.start(outcome.stage_id)
                tracker.fail(outcome.stage_id, "Not run: run crashed")
        aggregate = empty_aggregate()
        payloads = tracker.completed_payloads()
        for stage in self._stages:
            if stage.id in payloads:
                aggregate = merge_payload(aggregate, stage, payloads[stage.id])
        result = RunResult(
            run_id=tracker.run_id,
            target_id=request.target_id,
            aggregate=aggregate,
            snapshot=tracker.snapshot(),
            persisted=False,
            storage_error=f"Run crashed: {type(error).__name__}: {error}",
            cancelled=tracker.cancelled,
        )
        self._registry.finish(result)
        return result
