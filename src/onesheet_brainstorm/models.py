"""Pydantic models for requests, stage payloads, progress, and the aggregate."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

StageId = Literal["concepts", "iterations", "hooks", "visuals", "practices"]
StageStatus = Literal["pending", "in_progress", "completed", "error"]


# --- Context flags ---


class _Flags(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ContextHubFlags(_Flags):
    websites: bool = False
    reviews: bool = False
    reddit: bool = False
    articles: bool = False
    social_content: bool = False


class AudienceResearchFlags(_Flags):
    angles: bool = False
    benefits: bool = False
    pain_points: bool = False
    features: bool = False
    objections: bool = False
    failed_solutions: bool = False
    other: bool = False
    personas: bool = False


class CompetitorResearchFlags(_Flags):
    competitors: bool = False
    strategic_analysis: bool = False


class AdAuditFlags(_Flags):
    full_table: bool = False
    selected_ads_only: bool = False


class DemographicsFlags(_Flags):
    include_breakdown: bool = False


class StrategistFlags(_Flags):
    analysis_summary: bool = False
    strategic_summary: bool = False
    recommendations: bool = False
    creative_patterns: bool = False
    losing_elements: bool = False
    best_performing_hooks: bool = False
    optimal_sit_in_problem_range: bool = False
    top_performing_ads: bool = False
    low_performing_ads: bool = False


class ContextFlags(_Flags):
    """Which research categories feed the prompts.

    A category left as None is disabled and never fetched.
    """

    context_hub: ContextHubFlags | None = None
    audience_research: AudienceResearchFlags | None = None
    competitor_research: CompetitorResearchFlags | None = None
    ad_audit: AdAuditFlags | None = None
    demographics: DemographicsFlags | None = None
    ai_strategist: StrategistFlags | None = None


class GenerationRequest(BaseModel):
    """Immutable input for one orchestration run."""

    model_config = ConfigDict(frozen=True)

    target_id: str = Field(min_length=1, description="OneSheet id owning the research")
    model_id: str = Field(min_length=1)
    context_flags: ContextFlags = Field(default_factory=ContextFlags)
    evidence_selection: frozenset[str] = frozenset()
    iteration_selection: frozenset[str] = frozenset()


# --- Stage payloads ---
#
# Stored in `onesheet.creative_brainstorm`, which the web app reads and writes
# camelCase (netNewConcepts, targetPersona, creativeBestPractices, ...).
# Both spellings validate; documents are written by alias.


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Concept(_Document):
    id: str | None = None
    title: str
    description: str = ""
    angle: str = ""
    target_persona: str | None = None
    duration: str | None = None
    product_intro_time: str | None = None
    sit_in_problem_time: str | None = None
    number_of_creators: int | None = None
    content_variables: list[str] = Field(default_factory=list)
    type: str | None = None
    format: str | None = None
    priority: int = 1


class Iteration(_Document):
    id: str | None = None
    ad_id: str | None = Field(default=None, description="Ad this iteration builds on")
    title: str = ""
    changes: list[str] = Field(default_factory=list)
    rationale: str = ""
    expected_impact: str | None = None


class Hook(_Document):
    id: str | None = None
    text: str
    angle: str = ""
    concept_id: str | None = Field(default=None, description="Optional link to a generated concept")
    target_persona: str | None = None
    variations: list[str] = Field(default_factory=list)
    priority: int = 1


class HookSet(_Document):
    visual: list[Hook] = Field(default_factory=list, description="On-screen text overlays")
    audio: list[Hook] = Field(default_factory=list, description="Spoken in the first 3 seconds")


class Visual(_Document):
    id: str | None = None
    description: str
    type: Literal["static", "video", "carousel", "gif"] = "video"
    duration: str | None = None
    scenes: list[str] = Field(default_factory=list)
    key_elements: list[str] = Field(default_factory=list)
    color_scheme: list[str] = Field(default_factory=list)
    style: str | None = None
    concept_id: str | None = Field(default=None, description="Optional link to a generated concept")


class BestPractices(_Document):
    dos: list[str] = Field(default_factory=list)
    donts: list[str] = Field(default_factory=list)
    key_learnings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ConceptsPayload(_Document):
    concepts: list[Concept] = Field(alias="netNewConcepts")


class IterationsPayload(_Document):
    iterations: list[Iteration]


class HooksPayload(_Document):
    hooks: HookSet


class VisualsPayload(_Document):
    visuals: list[Visual]


class PracticesPayload(_Document):
    best_practices: BestPractices = Field(alias="creativeBestPractices")


StagePayload = ConceptsPayload | IterationsPayload | HooksPayload | VisualsPayload | PracticesPayload


class AggregateResult(_Document):
    """The persisted creative brainstorm. Every field is always present."""

    concepts: list[Concept] = Field(default_factory=list, alias="netNewConcepts")
    iterations: list[Iteration] = Field(default_factory=list)
    hooks: HookSet = Field(default_factory=HookSet)
    visuals: list[Visual] = Field(default_factory=list)
    best_practices: BestPractices = Field(default_factory=BestPractices, alias="creativeBestPractices")

    @field_validator("hooks", mode="before")
    @classmethod
    def _flat_hook_list(cls, value):
        # Older documents keep hooks as one flat list of on-screen hooks
        if isinstance(value, list):
            return {"visual": value}
        return value


# --- Stage context ---


class PerformanceSummary(BaseModel):
    """Compact stand-in for the full ad performance table."""

    ad_count: int = 0
    total_spend: float = 0.0
    weighted_cpa: float | None = None
    top_ads: list[dict[str, Any]] = Field(default_factory=list)


class AdAuditContext(BaseModel):
    all_ads: list[dict[str, Any]] | None = None
    selected_ads: list[dict[str, Any]] | None = None
    performance_summary: PerformanceSummary | None = None


class StageContext(BaseModel):
    """Grounding payload handed to the provider for one stage."""

    stage_id: StageId
    product: str = ""
    landing_page: str = ""
    context_hub: dict[str, list[dict[str, Any]]] | None = None
    audience_research: dict[str, Any] | None = None
    competitor_research: dict[str, Any] | None = None
    ad_audit: AdAuditContext | None = None
    demographics: dict[str, Any] | None = None
    ai_strategist: dict[str, Any] | None = None
    evidence_ids: list[str] = Field(default_factory=list)
    references: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)


# --- Progress ---


class ProviderError(BaseModel):
    """Returned by StageInvoker.invoke() when a stage could not be generated."""

    stage_id: StageId
    kind: Literal["timeout", "transport", "invalid_response"]
    message: str


class StageOutcome(BaseModel):
    stage_id: StageId
    status: StageStatus = "pending"
    payload: StagePayload | None = None
    error_detail: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunSnapshot(BaseModel):
    run_id: str
    target_id: str
    stages: list[StageOutcome]
    active_stage_id: StageId | None = None
    cancelled: bool = False

    @computed_field
    @property
    def done(self) -> bool:
        if self.cancelled and self.active_stage_id is None:
            return True
        return all(s.status in ("completed", "error") for s in self.stages)


class RunResult(BaseModel):
    run_id: str
    target_id: str
    aggregate: AggregateResult
    snapshot: RunSnapshot
    persisted: bool
    storage_error: str | None = None
    cancelled: bool = False
