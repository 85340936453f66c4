"""Click CLI entry point.

Usage:
    onesheet-brainstorm generate <onesheet-id> --all-context
    onesheet-brainstorm generate <onesheet-id> --ad-audit summary --audience --strategist
    onesheet-brainstorm generate <onesheet-id> --ad-audit selected --ad 123 --ad 456 --iterate 456
    onesheet-brainstorm show <onesheet-id>
    onesheet-brainstorm export <onesheet-id> --format csv -o brainstorm.csv
"""

from __future__ import annotations

import asyncio
import json

import click

from onesheet_brainstorm.models import (
    AdAuditFlags,
    AudienceResearchFlags,
    CompetitorResearchFlags,
    ContextFlags,
    ContextHubFlags,
    DemographicsFlags,
    GenerationRequest,
    RunResult,
    StrategistFlags,
)
from onesheet_brainstorm.utils.logging import BOLD, DIM, GREEN, RED, RESET, YELLOW, get_logger

log = get_logger()

_STATUS_MARK = {
    "completed": f"{GREEN}✓{RESET}",
    "error": f"{RED}✗{RESET}",
    "pending": f"{DIM}·{RESET}",
    "in_progress": f"{YELLOW}…{RESET}",
}


def _all_on(model):
    return model(**{name: True for name in model.model_fields})


def build_context_flags(
    context_hub: bool = False,
    audience: bool = False,
    competitors: bool = False,
    ad_audit: str | None = None,
    demographics: bool = False,
    strategist: bool = False,
) -> ContextFlags:
    """Turn coarse CLI switches into ContextFlags (a switch enables its whole category)."""
    audit_flags = None
    if ad_audit == "full":
        audit_flags = AdAuditFlags(full_table=True)
    elif ad_audit == "summary":
        audit_flags = AdAuditFlags()
    elif ad_audit == "selected":
        audit_flags = AdAuditFlags(selected_ads_only=True)

    return ContextFlags(
        context_hub=_all_on(ContextHubFlags) if context_hub else None,
        audience_research=_all_on(AudienceResearchFlags) if audience else None,
        competitor_research=_all_on(CompetitorResearchFlags) if competitors else None,
        ad_audit=audit_flags,
        demographics=DemographicsFlags(include_breakdown=True) if demographics else None,
        ai_strategist=_all_on(StrategistFlags) if strategist else None,
    )


@click.group()
def cli() -> None:
    """OneSheet creative brainstorm CLI."""
    pass


@cli.command()
@click.argument("onesheet_id")
@click.option("--model", default=None, help="Model id (default: settings.default_model)")
@click.option("--ad", "ads", multiple=True, help="Selected ad id (repeatable)")
@click.option("--iterate", "iterate", multiple=True, help="Ad id to write iterations for (repeatable)")
@click.option("--context-hub", is_flag=True, help="Include Context Hub sources")
@click.option("--audience", is_flag=True, help="Include audience research")
@click.option("--competitors", is_flag=True, help="Include competitor research")
@click.option(
    "--ad-audit",
    type=click.Choice(["full", "summary", "selected"]),
    default=None,
    help="Ad performance data: full table, compact summary, or selected ads only",
)
@click.option("--demographics", is_flag=True, help="Include demographic breakdown")
@click.option("--strategist", is_flag=True, help="Include the AI strategist opinion")
@click.option("--all-context", is_flag=True, help="Enable every category (ad audit as summary)")
def generate(
    onesheet_id: str,
    model: str | None,
    ads: tuple[str, ...],
    iterate: tuple[str, ...],
    context_hub: bool,
    audience: bool,
    competitors: bool,
    ad_audit: str | None,
    demographics: bool,
    strategist: bool,
    all_context: bool,
) -> None:
    """Run every brainstorm stage for a OneSheet and save the result."""
    from onesheet_brainstorm.config import settings

    if all_context:
        context_hub = audience = competitors = demographics = strategist = True
        ad_audit = ad_audit or "summary"

    request = GenerationRequest(
        target_id=onesheet_id,
        model_id=model or settings.default_model,
        context_flags=build_context_flags(
            context_hub, audience, competitors, ad_audit, demographics, strategist
        ),
        evidence_selection=frozenset(ads),
        iteration_selection=frozenset(iterate),
    )
    result = asyncio.run(_generate(request))
    if result is not None:
        _print_result(result)


async def _generate(request: GenerationRequest) -> RunResult | None:
    from onesheet_brainstorm.db import close_pool, get_pool
    from onesheet_brainstorm.errors import OrchestratorError
    from onesheet_brainstorm.orchestrator import GenerationOrchestrator
    from onesheet_brainstorm.provider import LangChainProvider
    from onesheet_brainstorm.research import PostgresResearchSources
    from onesheet_brainstorm.store import PostgresDocumentStore

    try:
        pool = await get_pool()
        orch = GenerationOrchestrator(
            LangChainProvider(),
            PostgresResearchSources(pool),
            PostgresDocumentStore(pool),
        )
        try:
            return await orch.run(request)
        except OrchestratorError as e:
            click.echo(f"Error: {e}")
            return None
    finally:
        await close_pool()


def _print_result(result: RunResult) -> None:
    click.echo(f"\n{BOLD}Creative Brainstorm — run {result.run_id}{RESET}\n")
    for outcome in result.snapshot.stages:
        line = f"  {_STATUS_MARK[outcome.status]} {outcome.stage_id:<12}"
        if outcome.error_detail:
            line += f" {DIM}{outcome.error_detail}{RESET}"
        click.echo(line)

    agg = result.aggregate
    click.echo(
        f"\n  {len(agg.concepts)} concepts, {len(agg.iterations)} iterations, "
        f"{len(agg.hooks.visual) + len(agg.hooks.audio)} hooks, {len(agg.visuals)} visuals"
    )
    if result.cancelled:
        click.echo(f"  {YELLOW}Cancelled, nothing saved{RESET}")
    elif result.persisted:
        click.echo(f"  {GREEN}Saved{RESET}")
    else:
        click.echo(f"  {RED}Not saved:{RESET} {result.storage_error}")


@cli.command()
@click.argument("onesheet_id")
def show(onesheet_id: str) -> None:
    """Print the saved brainstorm for a OneSheet."""
    asyncio.run(_show(onesheet_id))


async def _show(onesheet_id: str) -> None:
    from onesheet_brainstorm.db import close_pool, get_pool
    from onesheet_brainstorm.errors import StorageError
    from onesheet_brainstorm.store import PostgresDocumentStore

    try:
        pool = await get_pool()
        try:
            aggregate = await PostgresDocumentStore(pool).load(onesheet_id)
        except StorageError as e:
            click.echo(f"Error: {e}")
            return
        if aggregate is None:
            click.echo("No creative brainstorm saved for this OneSheet.")
            return

        click.echo(f"\n{BOLD}Concepts{RESET}")
        for c in aggregate.concepts:
            click.echo(f"  [{c.priority}] {c.title} {DIM}— {c.angle}{RESET}")
        click.echo(f"\n{BOLD}Iterations{RESET}")
        for it in aggregate.iterations:
            click.echo(f"  {it.title} {DIM}(ad {it.ad_id or '—'}){RESET}")
        click.echo(f"\n{BOLD}Hooks{RESET}")
        for h in aggregate.hooks.visual:
            click.echo(f"  visual: {h.text}")
        for h in aggregate.hooks.audio:
            click.echo(f"  audio:  {h.text}")
        click.echo(f"\n{BOLD}Visuals{RESET}")
        for v in aggregate.visuals:
            click.echo(f"  {v.type:<8} {v.description}")
        bp = aggregate.best_practices
        click.echo(f"\n{BOLD}Best practices{RESET}")
        click.echo(f"  {len(bp.dos)} dos, {len(bp.donts)} don'ts, {len(bp.recommendations)} recommendations")
    finally:
        await close_pool()


@cli.command()
@click.argument("onesheet_id")
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json")
@click.option("-o", "--output", type=click.Path(dir_okay=False, writable=True), default=None)
def export(onesheet_id: str, fmt: str, output: str | None) -> None:
    """Export the saved brainstorm as JSON or CSV."""
    content = asyncio.run(_export(onesheet_id, fmt))
    if content is None:
        return
    if output:
        with open(output, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        log.info(f"{GREEN}✓{RESET} Wrote {output}")
    else:
        click.echo(content)


async def _export(onesheet_id: str, fmt: str) -> str | None:
    from onesheet_brainstorm.db import close_pool, get_pool
    from onesheet_brainstorm.errors import StorageError
    from onesheet_brainstorm.export import export_csv, export_json
    from onesheet_brainstorm.research import PostgresResearchSources
    from onesheet_brainstorm.store import PostgresDocumentStore

    try:
        pool = await get_pool()
        try:
            aggregate = await PostgresDocumentStore(pool).load(onesheet_id)
        except StorageError as e:
            click.echo(f"Error: {e}")
            return None
        if aggregate is None:
            click.echo("No creative brainstorm saved for this OneSheet.")
            return None
        if fmt == "csv":
            return export_csv(aggregate)
        profile = await PostgresResearchSources(pool).profile(onesheet_id)
        return json.dumps(export_json(aggregate, profile.product, profile.landing_page), indent=2)
    finally:
        await close_pool()


if __name__ == "__main__":
    cli()
