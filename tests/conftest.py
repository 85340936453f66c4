"""Shared fixtures: a scripted provider, sample research, in-memory stores.

No database or LLM is touched; every collaborator is an in-memory fake.
"""

from __future__ import annotations

import copy
import inspect

import pytest

from onesheet_brainstorm.errors import StorageError
from onesheet_brainstorm.models import (
    AdAuditFlags,
    AudienceResearchFlags,
    ContextFlags,
    ContextHubFlags,
    DemographicsFlags,
    GenerationRequest,
    StrategistFlags,
)
from onesheet_brainstorm.orchestrator import GenerationOrchestrator, RunRegistry
from onesheet_brainstorm.research import (
    AdAudit,
    AdRecord,
    AudienceResearch,
    CompetitorResearch,
    ContextHubEntry,
    InMemoryResearchSources,
    OneSheetResearch,
    ProductProfile,
    StrategistOpinion,
)
from onesheet_brainstorm.store import InMemoryDocumentStore

TARGET = "onesheet-1"
MODEL = "test/model"

STAGE_RESPONSES = {
    "concepts": {
        "concepts": [
            {"id": "c1", "title": "Morning ritual", "angle": "routine", "description": "Day in the life"},
            {"title": "Before and after", "angle": "transformation"},
        ]
    },
    "iterations": {
        "iterations": [
            {"ad_id": "ad-2", "title": "Shorter hook", "changes": ["cut the intro", "move CTA up"]},
        ]
    },
    "hooks": {
        "hooks": {
            "visual": [{"text": "Stop scrolling if you hate mornings", "concept_id": "c1"}],
            "audio": [{"text": "I tried everything", "concept_id": "not-a-concept"}],
        }
    },
    "visuals": {
        "visuals": [
            {"description": "Split screen before/after", "type": "video", "concept_id": "c1"},
        ]
    },
    "practices": {
        "best_practices": {
            "dos": ["Show the product in the first 3 seconds"],
            "donts": ["Long brand intros"],
            "key_learnings": ["UGC beats studio"],
            "recommendations": ["Test more founder-led ads"],
        }
    },
}


class ScriptedProvider:
    """GenerationProvider fake driven by a per-stage script.

    A script entry may be a response dict, an exception instance (raised),
    or a callable taking the StageContext (sync or async) whose return value
    is used as the response.
    """

    def __init__(self, script: dict | None = None):
        self.script = copy.deepcopy(STAGE_RESPONSES)
        self.script.update(script or {})
        self.calls: list[tuple[str, str, object]] = []

    async def generate(self, stage_id, model_id, context):
        self.calls.append((stage_id, model_id, context))
        entry = self.script[stage_id]
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            entry = entry(context)
            if inspect.isawaitable(entry):
                entry = await entry
        return copy.deepcopy(entry)

    def called_stages(self) -> list[str]:
        return [c[0] for c in self.calls]


class FailingStore(InMemoryDocumentStore):
    async def save(self, target_id, aggregate):
        raise StorageError(f"OneSheet not found: {target_id}")


class CrashingStore(InMemoryDocumentStore):
    """Raises something other than StorageError from save()."""

    async def save(self, target_id, aggregate):
        raise RuntimeError("driver bug")


@pytest.fixture
def research() -> OneSheetResearch:
    return OneSheetResearch(
        profile=ProductProfile(product="Glow Serum", landing_page="https://glow.example/serum"),
        context_hub=[
            ContextHubEntry(source_type="brand_website", source_name="glow.example", content_text="Our serum..."),
            ContextHubEntry(source_type="reviews", content_text="Changed my skin"),
            ContextHubEntry(source_type="reddit", content_text="r/skincare thread"),
        ],
        audience_research=AudienceResearch(
            angles=["routine"],
            pain_points=["dull skin"],
            personas=[{"name": "Busy mom"}],
        ),
        competitor_research=CompetitorResearch(
            competitors=[{"name": "Brand X"}],
            deep_analysis={"summary": "Brand X leans on discounts"},
        ),
        ad_audit=AdAudit(
            ads=[
                AdRecord(id="ad-1", name="Founder story", spend=1200.0, cpa=24.0, hold_rate=0.31),
                AdRecord(id="ad-2", name="Unboxing", spend=800.0, cpa=40.0),
                AdRecord(id="ad-3", name="Static promo", spend=50.0),
            ],
            demographic_breakdown={"age": {"25-34": 0.6}},
        ),
        strategist_opinion=StrategistOpinion(
            summary="Founder-led video wins",
            recommendations=["More UGC"],
            creative_patterns={"bestPerformingHooks": ["Stop scrolling"], "optimalSitInProblemRange": "3-5s"},
        ),
    )


@pytest.fixture
def sources(research) -> InMemoryResearchSources:
    return InMemoryResearchSources({TARGET: research})


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def orchestrator(provider, sources, store) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        provider, sources, store, timeout_s=2.0, registry=RunRegistry(retained=10)
    )


@pytest.fixture
def full_flags() -> ContextFlags:
    return ContextFlags(
        context_hub=ContextHubFlags(websites=True, reviews=True),
        audience_research=AudienceResearchFlags(angles=True, pain_points=True, personas=True),
        ad_audit=AdAuditFlags(),
        demographics=DemographicsFlags(include_breakdown=True),
        ai_strategist=StrategistFlags(analysis_summary=True, best_performing_hooks=True),
    )


@pytest.fixture
def make_request():
    def _make(**kwargs) -> GenerationRequest:
        kwargs.setdefault("target_id", TARGET)
        kwargs.setdefault("model_id", MODEL)
        return GenerationRequest(**kwargs)

    return _make
