"""Generation Provider — LangChain adapter for the per-stage LLM calls.

Each stage has its own prompt file (prompts/<stage>_<version>.yaml) with a
system prompt and the stage-specific instructions. The JSON schema of the
stage payload is appended so the model answers with structured output.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Protocol

import yaml
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI

from onesheet_brainstorm.config import settings
from onesheet_brainstorm.models import StageContext, StageId
from onesheet_brainstorm.stages import get_stage
from onesheet_brainstorm.utils.logging import DIM, RESET, YELLOW, get_logger

log = get_logger()

_PROMPTS_DIR = Path(__file__).parent / "prompts"


def langfuse_callbacks() -> list:
    """LangChain callbacks that trace stage calls to Langfuse.

    Empty when Langfuse keys are unset or the client cannot start; generation
    then runs untraced.
    """
    if not settings.langfuse_public_key or not settings.langfuse_secret_key:
        log.debug(f"  {DIM}Langfuse not configured, stage calls are untraced{RESET}")
        return []

    try:
        from langfuse.langchain import CallbackHandler

        # The v3 client is configured through the environment
        os.environ.setdefault("LANGFUSE_PUBLIC_KEY", settings.langfuse_public_key)
        os.environ.setdefault("LANGFUSE_SECRET_KEY", settings.langfuse_secret_key)
        os.environ.setdefault("LANGFUSE_HOST", settings.langfuse_base_url)
        return [CallbackHandler()]
    except Exception as e:
        log.warning(f"  {YELLOW}Langfuse unavailable, stage calls are untraced: {e}{RESET}")
        return []


class GenerationProvider(Protocol):
    async def generate(self, stage_id: StageId, model_id: str, context: StageContext) -> dict[str, Any]:
        """Return the raw (unvalidated) stage payload. May raise on transport errors."""
        ...


def _get_llm(model_id: str) -> ChatOpenAI:
    """Create OpenRouter-backed LLM instance."""
    return ChatOpenAI(
        model=model_id,
        api_key=settings.openrouter_api_key,
        base_url=settings.llm_base_url,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )


def load_prompt_spec(stage_id: StageId, version: str) -> dict[str, str]:
    """Load a stage prompt definition from YAML."""
    path = _PROMPTS_DIR / f"{stage_id}_{version}.yaml"
    with open(path) as f:
        return yaml.safe_load(f)


def build_stage_prompt(stage_id: StageId, spec: dict[str, str]) -> ChatPromptTemplate:
    """System prompt plus a human message carrying the schema and context."""
    schema = get_stage(stage_id).payload_model.model_json_schema()
    # Escape curly braces so LangChain doesn't treat JSON schema as template vars
    schema_str = json.dumps(schema, indent=2).replace("{", "{{").replace("}", "}}")

    return ChatPromptTemplate.from_messages([
        ("system", spec["system"]),
        ("human",
         "{instructions}\n\n"
         "Respond with ONLY valid JSON matching this schema:\n"
         f"```json\n{schema_str}\n```\n\n"
         "Context data:\n"
         "```json\n{context}\n```\n"),
    ])


def stage_instructions(spec: dict[str, str], context: StageContext) -> str:
    """Pick the stage instructions, naming the target ads when there are any."""
    if context.evidence_ids and spec.get("instructions_selected"):
        return spec["instructions_selected"].replace("{ad_ids}", ", ".join(context.evidence_ids))
    return spec["instructions"]


def parse_json_response(response) -> dict[str, Any]:
    """Parse an LLM reply into a dict, tolerating markdown code fences.

    Raises ValueError when the reply is not a JSON object.
    """
    text = response.content if hasattr(response, "content") else str(response)

    # Strip markdown code fences if present
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    data = json.loads(text.strip())
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class LangChainProvider:
    """Calls the configured OpenRouter model through a LangChain prompt | llm chain."""

    def __init__(
        self,
        prompt_version: str | None = None,
        callbacks: list | None = None,
        llm_factory=_get_llm,
    ):
        self._version = prompt_version or settings.prompt_version
        self._callbacks = langfuse_callbacks() if callbacks is None else callbacks
        self._llm_factory = llm_factory
        self._specs: dict[str, dict[str, str]] = {}
        self._chains: dict[tuple[str, str], Any] = {}

    def _spec(self, stage_id: StageId) -> dict[str, str]:
        if stage_id not in self._specs:
            self._specs[stage_id] = load_prompt_spec(stage_id, self._version)
        return self._specs[stage_id]

    def _chain(self, stage_id: StageId, model_id: str):
        key = (stage_id, model_id)
        if key not in self._chains:
            prompt = build_stage_prompt(stage_id, self._spec(stage_id))
            self._chains[key] = prompt | self._llm_factory(model_id)
        return self._chains[key]

    async def generate(self, stage_id: StageId, model_id: str, context: StageContext) -> dict[str, Any]:
        chain = self._chain(stage_id, model_id)
        config = {"callbacks": self._callbacks} if self._callbacks else {}
        raw = await chain.ainvoke(
            {
                "instructions": stage_instructions(self._spec(stage_id), context),
                "context": context.model_dump_json(indent=2, exclude_none=True),
            },
            config=config,
        )
        return parse_json_response(raw)
