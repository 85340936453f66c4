"""Stage Invoker — one bounded provider call per stage.

Nothing raised by the provider escapes `invoke()`: timeouts, transport errors
and malformed responses all come back as a `ProviderError` value so the
orchestrator can record them and move on to the next stage.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from onesheet_brainstorm.config import settings
from onesheet_brainstorm.models import (
    ConceptsPayload,
    HooksPayload,
    IterationsPayload,
    ProviderError,
    StageContext,
    StagePayload,
    VisualsPayload,
)
from onesheet_brainstorm.provider import GenerationProvider
from onesheet_brainstorm.stages import StageDefinition
from onesheet_brainstorm.utils.logging import DIM, RESET, get_logger

log = get_logger()

StageResult = StagePayload | ProviderError


def _concept_refs(payload: ConceptsPayload) -> list[dict[str, Any]]:
    return [{"id": c.id, "title": c.title, "angle": c.angle} for c in payload.concepts]


# Earlier stage → summary later stages may point at
_REFERENCE_BUILDERS = {"concepts": _concept_refs}


def with_references(
    stage: StageDefinition,
    context: StageContext,
    prior: Mapping[str, StagePayload],
) -> StageContext:
    """Expose ids from completed earlier stages this stage may link to."""
    refs = {
        dep: _REFERENCE_BUILDERS[dep](prior[dep])
        for dep in stage.depends_on
        if dep in prior and dep in _REFERENCE_BUILDERS
    }
    if not refs:
        return context
    return context.model_copy(update={"references": refs})


def _with_ids(items: list[BaseModel]) -> list[BaseModel]:
    return [
        item if item.id else item.model_copy(update={"id": str(uuid.uuid4())})
        for item in items
    ]


def assign_ids(payload: StagePayload) -> StagePayload:
    """Give every generated item an id; the model often leaves them out."""
    if isinstance(payload, ConceptsPayload):
        return payload.model_copy(update={"concepts": _with_ids(payload.concepts)})
    if isinstance(payload, IterationsPayload):
        return payload.model_copy(update={"iterations": _with_ids(payload.iterations)})
    if isinstance(payload, HooksPayload):
        hooks = payload.hooks.model_copy(
            update={"visual": _with_ids(payload.hooks.visual), "audio": _with_ids(payload.hooks.audio)}
        )
        return payload.model_copy(update={"hooks": hooks})
    if isinstance(payload, VisualsPayload):
        return payload.model_copy(update={"visuals": _with_ids(payload.visuals)})
    return payload


def drop_dangling_references(
    payload: StagePayload,
    prior: Mapping[str, StagePayload],
) -> StagePayload:
    """Clear concept links that point at concepts this run did not produce."""
    concepts = prior.get("concepts")
    known = {c.id for c in concepts.concepts} if isinstance(concepts, ConceptsPayload) else set()

    def _clean(items):
        return [
            item if item.concept_id is None or item.concept_id in known
            else item.model_copy(update={"concept_id": None})
            for item in items
        ]

    if isinstance(payload, HooksPayload):
        hooks = payload.hooks.model_copy(
            update={"visual": _clean(payload.hooks.visual), "audio": _clean(payload.hooks.audio)}
        )
        return payload.model_copy(update={"hooks": hooks})
    if isinstance(payload, VisualsPayload):
        return payload.model_copy(update={"visuals": _clean(payload.visuals)})
    return payload


class StageInvoker:
    def __init__(self, provider: GenerationProvider, timeout_s: float | None = None):
        self._provider = provider
        self._timeout = timeout_s if timeout_s is not None else settings.stage_timeout_s

    async def invoke(
        self,
        stage: StageDefinition,
        context: StageContext,
        model_id: str,
        prior: Mapping[str, StagePayload],
    ) -> StageResult:
        """Generate one stage. Returns the validated payload or a ProviderError."""
        context = with_references(stage, context, prior)
        try:
            raw = await asyncio.wait_for(
                self._provider.generate(stage.id, model_id, context),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return ProviderError(
                stage_id=stage.id,
                kind="timeout",
                message=f"{stage.id}: provider call timed out after {self._timeout:g}s",
            )
        except ValueError as e:
            return ProviderError(
                stage_id=stage.id, kind="invalid_response", message=f"{stage.id}: {e}"
            )
        except Exception as e:
            return ProviderError(
                stage_id=stage.id,
                kind="transport",
                message=f"{stage.id}: {type(e).__name__}: {e}",
            )

        try:
            payload = stage.payload_model.model_validate(raw)
        except ValidationError as e:
            return ProviderError(
                stage_id=stage.id,
                kind="invalid_response",
                message=f"{stage.id}: response does not match schema ({e.error_count()} errors)",
            )

        payload = drop_dangling_references(assign_ids(payload), prior)
        log.debug(f"  {DIM}{stage.id}: payload validated{RESET}")
        return payload
