"""Static pipeline stage definitions.

Order only exists so later stages can softly reference ids produced by
earlier ones (hooks and visuals may point at a concept). It is never a hard
data dependency.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel

from onesheet_brainstorm.models import (
    ConceptsPayload,
    HooksPayload,
    IterationsPayload,
    PracticesPayload,
    StageId,
    VisualsPayload,
)


@dataclass(frozen=True)
class StageDefinition:
    id: StageId
    order: int
    field: str  # AggregateResult field this stage fills
    payload_model: type[BaseModel]
    depends_on: tuple[StageId, ...] = ()
    label: str = ""


STAGES: tuple[StageDefinition, ...] = (
    StageDefinition("concepts", 1, "concepts", ConceptsPayload, label="Net new concepts"),
    StageDefinition("iterations", 2, "iterations", IterationsPayload, label="Ad iterations"),
    StageDefinition("hooks", 3, "hooks", HooksPayload, depends_on=("concepts",), label="Hooks"),
    StageDefinition("visuals", 4, "visuals", VisualsPayload, depends_on=("concepts",), label="Visuals"),
    StageDefinition("practices", 5, "best_practices", PracticesPayload, label="Best practices"),
)

_BY_ID: dict[str, StageDefinition] = {s.id: s for s in STAGES}


def get_stage(stage_id: str) -> StageDefinition:
    """Look up a stage by id. Raises KeyError for unknown ids."""
    return _BY_ID[stage_id]


def ordered(stages: tuple[StageDefinition, ...] = STAGES) -> list[StageDefinition]:
    return sorted(stages, key=lambda s: s.order)
