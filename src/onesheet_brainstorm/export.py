"""Export a saved creative brainstorm as a JSON document or a flat CSV sheet."""

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Any

from onesheet_brainstorm.models import AggregateResult

CSV_HEADER = ["Type", "Title/Text/Description", "Angle", "Priority", "Target Persona", "Additional Info"]


def export_json(
    aggregate: AggregateResult,
    product: str = "",
    landing_page: str = "",
) -> dict[str, Any]:
    data = aggregate.model_dump(mode="json")
    return {
        "product": product,
        "landing_page": landing_page,
        **data,
        "exported_at": datetime.now(timezone.utc).isoformat(),
    }


def _rows(aggregate: AggregateResult):
    for c in aggregate.concepts:
        yield ["Concept", c.title, c.angle, c.priority, c.target_persona or "", c.description]

    for it in aggregate.iterations:
        yield [
            "Iteration",
            it.title,
            "",
            "",
            "",
            f"Ad: {it.ad_id or ''} | Changes: {' | '.join(it.changes)}",
        ]

    for kind, hooks in (("visual", aggregate.hooks.visual), ("audio", aggregate.hooks.audio)):
        for h in hooks:
            yield [
                f"Hook ({kind})",
                h.text,
                h.angle,
                h.priority,
                h.target_persona or "",
                f"Variations: {' | '.join(h.variations)}",
            ]

    for v in aggregate.visuals:
        yield ["Visual", v.description, "", "", "", f"Type: {v.type} | Style: {v.style or ''}"]

    bp = aggregate.best_practices
    for label, items in (
        ("Do", bp.dos),
        ("Don't", bp.donts),
        ("Key learning", bp.key_learnings),
        ("Recommendation", bp.recommendations),
    ):
        for text in items:
            yield ["Practice", text, "", "", "", label]


def export_csv(aggregate: AggregateResult) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    writer.writerows(_rows(aggregate))
    return buf.getvalue()
