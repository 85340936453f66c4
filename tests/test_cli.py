from unittest.mock import AsyncMock

from click.testing import CliRunner

from onesheet_brainstorm import cli as cli_module
from onesheet_brainstorm.cli import build_context_flags, cli


def test_build_context_flags_enables_whole_categories():
    flags = build_context_flags(context_hub=True, strategist=True, ad_audit="summary")
    assert flags.context_hub.reviews and flags.context_hub.social_content
    assert flags.ai_strategist.low_performing_ads
    assert flags.ad_audit.full_table is False
    assert flags.audience_research is None
    assert flags.demographics is None


def test_ad_audit_modes():
    assert build_context_flags(ad_audit="full").ad_audit.full_table
    assert build_context_flags(ad_audit="selected").ad_audit.selected_ads_only
    assert build_context_flags().ad_audit is None


def test_generate_builds_request(monkeypatch):
    captured = {}

    async def fake_generate(request):
        captured["request"] = request
        return None

    monkeypatch.setattr(cli_module, "_generate", fake_generate)
    result = CliRunner().invoke(
        cli,
        ["generate", "os-9", "--model", "x/y", "--ad", "a1", "--ad", "a2", "--iterate", "a2", "--all-context"],
    )

    assert result.exit_code == 0, result.output
    request = captured["request"]
    assert request.target_id == "os-9"
    assert request.model_id == "x/y"
    assert request.evidence_selection == frozenset({"a1", "a2"})
    assert request.iteration_selection == frozenset({"a2"})
    assert request.context_flags.audience_research is not None
    assert request.context_flags.ad_audit.full_table is False


def _fake_db(monkeypatch, stored):
    import onesheet_brainstorm.db as db

    pool = AsyncMock()
    pool.fetchval.return_value = stored

    async def get_pool():
        return pool

    async def close_pool():
        pass

    monkeypatch.setattr(db, "get_pool", get_pool)
    monkeypatch.setattr(db, "close_pool", close_pool)
    return pool


def test_show_reports_malformed_document(monkeypatch):
    _fake_db(monkeypatch, {"netNewConcepts": "nope"})

    result = CliRunner().invoke(cli, ["show", "os-9"])

    assert result.exit_code == 0, result.output
    assert "Error:" in result.output
    assert "malformed" in result.output


def test_export_reports_malformed_document(monkeypatch):
    _fake_db(monkeypatch, {"netNewConcepts": "nope"})

    result = CliRunner().invoke(cli, ["export", "os-9", "--format", "csv"])

    assert result.exit_code == 0, result.output
    assert "malformed" in result.output
    assert "No creative brainstorm saved" not in result.output


def test_export_without_saved_brainstorm(monkeypatch):
    _fake_db(monkeypatch, None)

    result = CliRunner().invoke(cli, ["export", "os-9"])

    assert result.exit_code == 0, result.output
    assert "No creative brainstorm saved" in result.output
