"""Merge step: fold stage payloads into the always-complete AggregateResult."""

from __future__ import annotations

from pydantic import BaseModel

from onesheet_brainstorm.models import AggregateResult
from onesheet_brainstorm.stages import StageDefinition


def empty_aggregate() -> AggregateResult:
    return AggregateResult()


def merge_payload(
    aggregate: AggregateResult,
    stage: StageDefinition,
    payload: BaseModel,
) -> AggregateResult:
    """Return a new aggregate with `stage`'s field replaced by the payload's value.

    Pure and idempotent: merging the same payload again yields an equal
    aggregate. Fields of other stages are left untouched, so a failed stage
    keeps its typed empty default.
    """
    value = getattr(payload, stage.field)
    if isinstance(value, BaseModel):
        value = value.model_copy(deep=True)
    else:
        value = [item.model_copy(deep=True) for item in value]
    return aggregate.model_copy(update={stage.field: value})
