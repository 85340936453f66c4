"""Async PostgreSQL operations using asyncpg.

Direct SQL over the OneSheet tables, no ORM and no Supabase SDK. One connection
string to point at a local database or the hosted one.
"""

from __future__ import annotations

import json

import asyncpg

from onesheet_brainstorm.config import settings

_pool: asyncpg.Pool | None = None


async def get_pool(database_url: str | None = None) -> asyncpg.Pool:
    global _pool
    if _pool is None:
        url = database_url or settings.database_url
        _pool = await asyncpg.create_pool(url, min_size=1, max_size=10)
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


def _jsonb(value):
    """asyncpg hands jsonb back as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


async def get_onesheet(pool: asyncpg.Pool, onesheet_id: str) -> dict | None:
    """Fetch the research columns of one OneSheet."""
    row = await pool.fetchrow(
        """
        SELECT id, product, landing_page_url, audience_research, competitor_research,
               ad_account_audit, ai_strategist_opinion
        FROM onesheet
        WHERE id = $1::uuid
        """,
        onesheet_id,
    )
    if not row:
        return None
    data = dict(row)
    for key in ("audience_research", "competitor_research", "ad_account_audit", "ai_strategist_opinion"):
        data[key] = _jsonb(data[key])
    return data


async def get_context_entries(pool: asyncpg.Pool, onesheet_id: str) -> list[dict]:
    """Active Context Hub records (websites, reviews, reddit threads, ...)."""
    rows = await pool.fetch(
        """
        SELECT id, source_type, source_name, source_url, content_text, extracted_data
        FROM context_data
        WHERE onesheet_id = $1::uuid AND is_active = true
        ORDER BY created_at, id
        """,
        onesheet_id,
    )
    entries = []
    for r in rows:
        entry = dict(r)
        entry["id"] = str(entry["id"])
        entry["extracted_data"] = _jsonb(entry["extracted_data"])
        entries.append(entry)
    return entries


async def get_creative_brainstorm(pool: asyncpg.Pool, onesheet_id: str) -> dict | None:
    value = await pool.fetchval(
        "SELECT creative_brainstorm FROM onesheet WHERE id = $1::uuid",
        onesheet_id,
    )
    return _jsonb(value) if value is not None else None


async def save_creative_brainstorm(pool: asyncpg.Pool, onesheet_id: str, data: dict) -> bool:
    """Write the brainstorm document and mark the stage complete.

    Returns False when no OneSheet row matched.
    """
    status = await pool.execute(
        """
        UPDATE onesheet SET
            creative_brainstorm = $2::jsonb,
            stages_completed = COALESCE(stages_completed, '{}'::jsonb)
                || '{"creative_brainstorm": true}'::jsonb,
            updated_at = NOW()
        WHERE id = $1::uuid
        """,
        onesheet_id,
        json.dumps(data),
    )
    return status != "UPDATE 0"


async def clear_creative_brainstorm(pool: asyncpg.Pool, onesheet_id: str) -> bool:
    status = await pool.execute(
        """
        UPDATE onesheet SET
            creative_brainstorm = NULL,
            stages_completed = COALESCE(stages_completed, '{}'::jsonb)
                || '{"creative_brainstorm": false}'::jsonb,
            updated_at = NOW()
        WHERE id = $1::uuid
        """,
        onesheet_id,
    )
    return status != "UPDATE 0"
