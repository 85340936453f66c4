"""Context Assembler — builds the grounding payload for one stage.

Only categories enabled in the request's ContextFlags are fetched from the
research sources, so the caller controls the token/latency cost explicitly.
The large ad performance table is sent verbatim only when `full_table` is
set; otherwise a compact summary is sent instead.
"""

from __future__ import annotations

from typing import Any

from onesheet_brainstorm.errors import ContextError, PreconditionFailed
from onesheet_brainstorm.models import (
    AdAuditContext,
    GenerationRequest,
    PerformanceSummary,
    StageContext,
    StageId,
)
from onesheet_brainstorm.research import AdRecord, ResearchSources

# Context Hub flag → source_type values it covers
_HUB_SOURCE_TYPES: dict[str, tuple[str, ...]] = {
    "websites": ("brand_website", "competitor_website"),
    "reviews": ("reviews",),
    "reddit": ("reddit",),
    "articles": ("articles",),
    "social_content": ("social_content",),
}

# Strategist flag → (opinion field, creative_patterns key or None)
_STRATEGIST_FIELDS: dict[str, tuple[str, str | None]] = {
    "analysis_summary": ("summary", None),
    "strategic_summary": ("executive_summary", None),
    "recommendations": ("recommendations", None),
    "creative_patterns": ("creative_patterns", None),
    "losing_elements": ("what_doesnt_work", None),
    "best_performing_hooks": ("creative_patterns", "bestPerformingHooks"),
    "optimal_sit_in_problem_range": ("creative_patterns", "optimalSitInProblemRange"),
    "top_performing_ads": ("top_performers", None),
    "low_performing_ads": ("low_performers", None),
}

SUMMARY_TOP_ADS = 5


def stage_evidence(stage_id: StageId, request: GenerationRequest) -> list[str]:
    """Evidence ids a stage works from, sorted for deterministic prompts.

    The iterations stage narrows to `iteration_selection` when one was given.
    """
    if stage_id == "iterations" and request.iteration_selection:
        return sorted(request.iteration_selection)
    return sorted(request.evidence_selection)


def summarize_ads(ads: list[AdRecord], top_n: int = SUMMARY_TOP_ADS) -> PerformanceSummary:
    """Compact performance summary used when the full table is not requested."""
    total_spend = sum(ad.spend for ad in ads)
    cpa_spend = sum(ad.spend for ad in ads if ad.cpa is not None)
    weighted_cpa = None
    if cpa_spend > 0:
        weighted_cpa = round(
            sum(ad.cpa * ad.spend for ad in ads if ad.cpa is not None) / cpa_spend, 2
        )
    top = sorted(ads, key=lambda ad: (-ad.spend, ad.id))[:top_n]
    return PerformanceSummary(
        ad_count=len(ads),
        total_spend=round(total_spend, 2),
        weighted_cpa=weighted_cpa,
        top_ads=[
            {"id": ad.id, "name": ad.name, "spend": ad.spend, "cpa": ad.cpa, "hold_rate": ad.hold_rate}
            for ad in top
        ],
    )


class ContextAssembler:
    """Stateless: identical inputs always produce an identical StageContext."""

    def check_preconditions(self, request: GenerationRequest) -> None:
        """Pipeline-level validation. Runs before any provider call.

        Raises PreconditionFailed.
        """
        ad_flags = request.context_flags.ad_audit
        if ad_flags and ad_flags.selected_ads_only and not request.evidence_selection:
            raise PreconditionFailed("Please select at least one ad to analyze")
        stray = request.iteration_selection - request.evidence_selection
        if stray:
            raise PreconditionFailed(
                f"Iteration ads must be part of the selected ads: {', '.join(sorted(stray))}"
            )

    async def assemble(
        self,
        stage_id: StageId,
        request: GenerationRequest,
        sources: ResearchSources,
    ) -> StageContext:
        """Build the StageContext for `stage_id`. Raises ContextError."""
        self.check_preconditions(request)
        try:
            return await self._assemble(stage_id, request, sources)
        except ContextError:
            raise
        except Exception as e:
            raise ContextError(f"{stage_id}: failed to load research ({e})") from e

    async def _assemble(
        self,
        stage_id: StageId,
        request: GenerationRequest,
        sources: ResearchSources,
    ) -> StageContext:
        flags = request.context_flags
        target = request.target_id
        evidence = stage_evidence(stage_id, request)

        profile = await sources.profile(target)
        ctx = StageContext(
            stage_id=stage_id,
            product=profile.product,
            landing_page=profile.landing_page,
            evidence_ids=evidence,
        )

        if flags.context_hub:
            entries = await sources.context_hub(target)
            hub: dict[str, list[dict[str, Any]]] = {}
            for flag, types in _HUB_SOURCE_TYPES.items():
                if getattr(flags.context_hub, flag):
                    hub[flag] = [
                        e.model_dump(exclude_none=True) for e in entries if e.source_type in types
                    ]
            ctx.context_hub = hub

        if flags.audience_research:
            research = await sources.audience_research(target)
            ctx.audience_research = {
                name: getattr(research, name)
                for name, enabled in flags.audience_research
                if enabled
            }

        if flags.competitor_research:
            research = await sources.competitor_research(target)
            section: dict[str, Any] = {}
            if flags.competitor_research.competitors:
                section["competitors"] = research.competitors
            if flags.competitor_research.strategic_analysis:
                section["deep_analysis"] = research.deep_analysis
            ctx.competitor_research = section

        if flags.ad_audit or (flags.demographics and flags.demographics.include_breakdown):
            audit = await sources.ad_audit(target)
            if flags.ad_audit:
                ctx.ad_audit = self._ad_section(stage_id, request, audit.ads, evidence)
            if flags.demographics and flags.demographics.include_breakdown:
                ctx.demographics = audit.demographic_breakdown

        if flags.ai_strategist:
            opinion = await sources.strategist_opinion(target)
            strategist: dict[str, Any] = {}
            for flag, (field, pattern_key) in _STRATEGIST_FIELDS.items():
                if not getattr(flags.ai_strategist, flag):
                    continue
                value = getattr(opinion, field)
                if pattern_key is not None:
                    value = value.get(pattern_key)
                strategist[flag] = value
            ctx.ai_strategist = strategist

        return ctx

    def _ad_section(
        self,
        stage_id: StageId,
        request: GenerationRequest,
        ads: list[AdRecord],
        evidence: list[str],
    ) -> AdAuditContext:
        ad_flags = request.context_flags.ad_audit
        section = AdAuditContext()
        wants_selection = ad_flags.selected_ads_only or (stage_id == "iterations" and evidence)

        if wants_selection:
            chosen = set(evidence)
            selected = [ad for ad in ads if ad.id in chosen]
            if not selected and ad_flags.selected_ads_only:
                raise ContextError(
                    f"{stage_id}: none of the selected ads exist in the ad audit"
                )
            section.selected_ads = [ad.model_dump(by_alias=True) for ad in selected]

        if ad_flags.full_table and not ad_flags.selected_ads_only:
            section.all_ads = [ad.model_dump(by_alias=True) for ad in ads]
        elif not ad_flags.selected_ads_only:
            section.performance_summary = summarize_ads(ads)

        return section
