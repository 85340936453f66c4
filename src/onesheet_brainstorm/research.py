"""Research Sources — read-only access to the upstream OneSheet research.

Each accessor returns the container for one context category. Missing data
yields an empty container, never an error: an absent column, a `null`
document, or a `null` field inside one all read as empty. Upstream documents
are stored camelCase (painPoints, demographicBreakdown, ...), so the
containers accept both spellings.
"""

from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from onesheet_brainstorm.db import get_context_entries, get_onesheet


class _Research(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def _null_as_default(cls, value, info: ValidationInfo):
        if value is None:
            field = cls.model_fields[info.field_name]
            if not field.is_required():
                return field.get_default(call_default_factory=True)
        return value


class ProductProfile(_Research):
    product: str = ""
    landing_page: str = ""


class ContextHubEntry(_Research):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str | None = None
    source_type: str
    source_name: str | None = None
    source_url: str | None = None
    content_text: str | None = None
    extracted_data: Any = None


class AudienceResearch(_Research):
    angles: list[Any] = Field(default_factory=list)
    benefits: list[Any] = Field(default_factory=list)
    pain_points: list[Any] = Field(default_factory=list)
    features: list[Any] = Field(default_factory=list)
    objections: list[Any] = Field(default_factory=list)
    failed_solutions: list[Any] = Field(default_factory=list)
    other: list[Any] = Field(default_factory=list)
    personas: list[Any] = Field(default_factory=list)


class CompetitorResearch(_Research):
    competitors: list[Any] = Field(default_factory=list)
    deep_analysis: dict[str, Any] = Field(default_factory=dict)


class AdRecord(_Research):
    """One row of the ad performance table. Unknown columns are kept verbatim."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    name: str = ""
    spend: float = 0.0
    cpa: float | None = None
    hold_rate: float | None = None
    angle: str | None = None
    format: str | None = None


class AdAudit(_Research):
    ads: list[AdRecord] = Field(default_factory=list)
    demographic_breakdown: dict[str, Any] = Field(default_factory=dict)


class StrategistOpinion(_Research):
    summary: Any = None
    executive_summary: Any = None
    recommendations: Any = None
    creative_patterns: dict[str, Any] = Field(default_factory=dict)
    what_doesnt_work: Any = None
    top_performers: Any = None
    low_performers: Any = None


class OneSheetResearch(BaseModel):
    """Everything the assembler can draw on for one OneSheet."""

    profile: ProductProfile = Field(default_factory=ProductProfile)
    context_hub: list[ContextHubEntry] = Field(default_factory=list)
    audience_research: AudienceResearch = Field(default_factory=AudienceResearch)
    competitor_research: CompetitorResearch = Field(default_factory=CompetitorResearch)
    ad_audit: AdAudit = Field(default_factory=AdAudit)
    strategist_opinion: StrategistOpinion = Field(default_factory=StrategistOpinion)

    @classmethod
    def from_row(cls, row: dict | None, entries: list[dict] | None = None) -> OneSheetResearch:
        if not row:
            return cls(context_hub=[ContextHubEntry.model_validate(e) for e in entries or []])
        return cls(
            profile=ProductProfile(
                product=row.get("product") or "",
                landing_page=row.get("landing_page_url") or "",
            ),
            context_hub=[ContextHubEntry.model_validate(e) for e in entries or []],
            audience_research=AudienceResearch.model_validate(row.get("audience_research") or {}),
            competitor_research=CompetitorResearch.model_validate(row.get("competitor_research") or {}),
            ad_audit=AdAudit.model_validate(row.get("ad_account_audit") or {}),
            strategist_opinion=StrategistOpinion.model_validate(row.get("ai_strategist_opinion") or {}),
        )


class ResearchSources(Protocol):
    async def profile(self, target_id: str) -> ProductProfile: ...
    async def context_hub(self, target_id: str) -> list[ContextHubEntry]: ...
    async def audience_research(self, target_id: str) -> AudienceResearch: ...
    async def competitor_research(self, target_id: str) -> CompetitorResearch: ...
    async def ad_audit(self, target_id: str) -> AdAudit: ...
    async def strategist_opinion(self, target_id: str) -> StrategistOpinion: ...


class InMemoryResearchSources:
    """Research held in a dict keyed by OneSheet id."""

    def __init__(self, research: dict[str, OneSheetResearch] | None = None):
        self._research = dict(research or {})

    def put(self, target_id: str, research: OneSheetResearch) -> None:
        self._research[target_id] = research

    def _get(self, target_id: str) -> OneSheetResearch:
        return self._research.get(target_id) or OneSheetResearch()

    async def profile(self, target_id: str) -> ProductProfile:
        return self._get(target_id).profile

    async def context_hub(self, target_id: str) -> list[ContextHubEntry]:
        return list(self._get(target_id).context_hub)

    async def audience_research(self, target_id: str) -> AudienceResearch:
        return self._get(target_id).audience_research

    async def competitor_research(self, target_id: str) -> CompetitorResearch:
        return self._get(target_id).competitor_research

    async def ad_audit(self, target_id: str) -> AdAudit:
        return self._get(target_id).ad_audit

    async def strategist_opinion(self, target_id: str) -> StrategistOpinion:
        return self._get(target_id).strategist_opinion


class PostgresResearchSources:
    """Reads research straight from the `onesheet` and `context_data` tables.

    Each accessor validates only its own column, so a malformed document in
    one category never blocks the others.
    """

    def __init__(self, pool):
        self._pool = pool

    async def _column(self, target_id: str, column: str) -> dict:
        row = await get_onesheet(self._pool, target_id)
        return (row or {}).get(column) or {}

    async def profile(self, target_id: str) -> ProductProfile:
        row = await get_onesheet(self._pool, target_id) or {}
        return ProductProfile(
            product=row.get("product") or "",
            landing_page=row.get("landing_page_url") or "",
        )

    async def context_hub(self, target_id: str) -> list[ContextHubEntry]:
        entries = await get_context_entries(self._pool, target_id)
        return [ContextHubEntry.model_validate(e) for e in entries]

    async def audience_research(self, target_id: str) -> AudienceResearch:
        return AudienceResearch.model_validate(await self._column(target_id, "audience_research"))

    async def competitor_research(self, target_id: str) -> CompetitorResearch:
        return CompetitorResearch.model_validate(await self._column(target_id, "competitor_research"))

    async def ad_audit(self, target_id: str) -> AdAudit:
        return AdAudit.model_validate(await self._column(target_id, "ad_account_audit"))

    async def strategist_opinion(self, target_id: str) -> StrategistOpinion:
        return StrategistOpinion.model_validate(await self._column(target_id, "ai_strategist_opinion"))


class CachedResearchSources:
    """Wraps a ResearchSources so each category is read at most once.

    Scoped to a single run: research does not change while a run is in
    flight, and a fresh wrapper per run picks up later edits. Failures are
    not cached.
    """

    def __init__(self, sources: ResearchSources):
        self._sources = sources
        self._cache: dict[tuple[str, str], Any] = {}

    async def _get(self, name: str, target_id: str):
        key = (name, target_id)
        if key not in self._cache:
            self._cache[key] = await getattr(self._sources, name)(target_id)
        return self._cache[key]

    async def profile(self, target_id: str) -> ProductProfile:
        return await self._get("profile", target_id)

    async def context_hub(self, target_id: str) -> list[ContextHubEntry]:
        return list(await self._get("context_hub", target_id))

    async def audience_research(self, target_id: str) -> AudienceResearch:
        return await self._get("audience_research", target_id)

    async def competitor_research(self, target_id: str) -> CompetitorResearch:
        return await self._get("competitor_research", target_id)

    async def ad_audit(self, target_id: str) -> AdAudit:
        return await self._get("ad_audit", target_id)

    async def strategist_opinion(self, target_id: str) -> StrategistOpinion:
        return await self._get("strategist_opinion", target_id)
