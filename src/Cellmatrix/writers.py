"""Write paths for import runs.

``BufferedWriter`` stages records per destination table and inserts them in
one batch on ``flush``; failures only surface at flush time.
``TransactionalWriter`` checks for an existing row and inserts immediately.
The import pipeline receives one of them explicitly per run.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog
from sqlalchemy import Table, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from Cellmatrix import alterations, models
from Cellmatrix.errors import FlushError
from Cellmatrix.metrics import inc_counter

log = structlog.get_logger()

ALTERATION_TABLE: Table = models.CellAlteration.__table__  # type: ignore[assignment]
SAMPLE_LINK_TABLE: Table = models.SampleCellProfile.__table__  # type: ignore[assignment]


class WriteGateway(Protocol):
    mode: str

    async def write_alteration(
        self, s: AsyncSession, profile_id: int, entity_id: int, packed: str
    ) -> int: ...

    async def link_sample(
        self, s: AsyncSession, sample_id: int, profile_id: int, panel_id: int | None = None
    ) -> int: ...

    async def flush(self, s: AsyncSession) -> int: ...


class BufferedWriter:
    """Stage inserts in memory and bulk insert them on ``flush``.

    Duplicate and idempotency checks are the caller's responsibility; a
    constraint violation fails the whole batch for that table.
    """

    mode = "buffered"

    def __init__(self) -> None:
        self._tables: dict[str, Table] = {}
        self._batches: dict[str, list[dict[str, Any]]] = {}

    def stage(self, table: Table, record: dict[str, Any]) -> int:
        self._tables.setdefault(table.name, table)
        self._batches.setdefault(table.name, []).append(record)
        return 1

    def pending(self) -> dict[str, int]:
        return {name: len(rows) for name, rows in self._batches.items()}

    async def write_alteration(
        self, s: AsyncSession, profile_id: int, entity_id: int, packed: str
    ) -> int:
        return self.stage(
            ALTERATION_TABLE,
            {"profile_id": profile_id, "entity_id": entity_id, "alteration_values": packed},
        )

    async def link_sample(
        self, s: AsyncSession, sample_id: int, profile_id: int, panel_id: int | None = None
    ) -> int:
        record = {"sample_id": sample_id, "profile_id": profile_id, "panel_id": panel_id}
        if record in self._batches.get(SAMPLE_LINK_TABLE.name, []):
            return 0
        return self.stage(SAMPLE_LINK_TABLE, record)

    async def flush(self, s: AsyncSession) -> int:
        """Insert every staged batch. Returns the number of rows inserted.

        Batches are flushed in staging order; the first failing table raises
        ``FlushError`` and leaves its batch and any later ones staged.
        """
        total = 0
        for name in list(self._batches):
            rows = self._batches[name]
            if not rows:
                del self._batches[name]
                continue
            try:
                await s.execute(insert(self._tables[name]), rows)
            except SQLAlchemyError as exc:
                log.error("writer.flush.failed", table=name, pending=len(rows), exc_info=True)
                raise FlushError(name, len(rows), str(getattr(exc, "orig", None) or exc)) from exc
            log.info("writer.flush.table", table=name, rows=len(rows))
            inc_counter("writer.flush.rows", len(rows))
            total += len(rows)
            del self._batches[name]
        return total


class TransactionalWriter:
    """Insert rows immediately after checking they were not written before."""

    mode = "immediate"

    def __init__(self) -> None:
        self._written: set[tuple[int, int]] = set()

    async def write_alteration(
        self, s: AsyncSession, profile_id: int, entity_id: int, packed: str
    ) -> int:
        key = (profile_id, entity_id)
        if key in self._written or await alterations.alteration_exists(s, profile_id, entity_id):
            log.warning("writer.alteration.exists", profile_id=profile_id, entity_id=entity_id)
            return 0
        rows = await alterations.insert_alteration(s, profile_id, entity_id, packed)
        self._written.add(key)
        return rows

    async def link_sample(
        self, s: AsyncSession, sample_id: int, profile_id: int, panel_id: int | None = None
    ) -> int:
        return await alterations.link_sample_to_profile(s, sample_id, profile_id, panel_id)

    async def flush(self, s: AsyncSession) -> int:
        return 0


def make_writer(bulk_load: bool) -> WriteGateway:
    return BufferedWriter() if bulk_load else TransactionalWriter()
