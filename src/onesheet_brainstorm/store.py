"""Document Store — persistence of the creative brainstorm aggregate.

Last write wins per OneSheet; the per-target run lock keeps concurrent
generations from racing on the same row.
"""

from __future__ import annotations

from typing import Protocol

import asyncpg
from pydantic import ValidationError

from onesheet_brainstorm.db import (
    clear_creative_brainstorm,
    get_creative_brainstorm,
    save_creative_brainstorm,
)
from onesheet_brainstorm.errors import StorageError
from onesheet_brainstorm.models import AggregateResult

# DataError (bad uuid text) derives from InterfaceError, not PostgresError
_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class DocumentStore(Protocol):
    async def save(self, target_id: str, aggregate: AggregateResult) -> None: ...
    async def load(self, target_id: str) -> AggregateResult | None: ...
    async def clear(self, target_id: str) -> None: ...


class InMemoryDocumentStore:
    def __init__(self):
        self._docs: dict[str, str] = {}

    async def save(self, target_id: str, aggregate: AggregateResult) -> None:
        self._docs[target_id] = aggregate.model_dump_json(by_alias=True)

    async def load(self, target_id: str) -> AggregateResult | None:
        raw = self._docs.get(target_id)
        return AggregateResult.model_validate_json(raw) if raw is not None else None

    async def clear(self, target_id: str) -> None:
        self._docs.pop(target_id, None)


class PostgresDocumentStore:
    """Stores the aggregate in `onesheet.creative_brainstorm`."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def save(self, target_id: str, aggregate: AggregateResult) -> None:
        try:
            updated = await save_creative_brainstorm(
                self._pool, target_id, aggregate.model_dump(mode="json", by_alias=True)
            )
        except _DB_ERRORS as e:
            raise StorageError(f"Failed to save creative brainstorm for {target_id}: {e}") from e
        if not updated:
            raise StorageError(f"OneSheet not found: {target_id}")

    async def load(self, target_id: str) -> AggregateResult | None:
        try:
            data = await get_creative_brainstorm(self._pool, target_id)
        except _DB_ERRORS as e:
            raise StorageError(f"Failed to load creative brainstorm for {target_id}: {e}") from e
        if data is None:
            return None
        try:
            return AggregateResult.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"Stored creative brainstorm for {target_id} is malformed: {e}") from e

    async def clear(self, target_id: str) -> None:
        try:
            updated = await clear_creative_brainstorm(self._pool, target_id)
        except _DB_ERRORS as e:
            raise StorageError(f"Failed to clear creative brainstorm for {target_id}: {e}") from e
        if not updated:
            raise StorageError(f"OneSheet not found: {target_id}")
