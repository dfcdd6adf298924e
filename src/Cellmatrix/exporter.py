"""Read a stored profile back as a matrix or a tab-delimited file."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TextIO

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Cellmatrix import alterations, codec, models, repos
from Cellmatrix.config import load_settings
from Cellmatrix.errors import CellmatrixError

log = structlog.get_logger()


class ProfileNotFoundError(CellmatrixError):
    """No profile has the requested stable id."""


@dataclass
class ProfileData:
    """Cell x sample matrix of one profile, keyed by names and stable ids."""

    profile_stable_id: str
    sample_ids: list[str]
    entity_names: list[str]
    external_ids: dict[str, int | None] = field(default_factory=dict)
    _values: dict[str, dict[str, str]] = field(default_factory=dict, repr=False)

    def value(self, entity_name: str, sample_id: str) -> str | None:
        return self._values.get(entity_name.upper(), {}).get(sample_id)

    def row(self, entity_name: str) -> list[str]:
        return codec.value_row(self._values.get(entity_name.upper(), {}), self.sample_ids)

    @classmethod
    async def load(cls, s: AsyncSession, profile: models.CellProfile) -> ProfileData:
        order = await alterations.get_sample_order(s, profile.id)
        stable_by_id = await _stable_ids(s, order)
        data = await alterations.get_alteration_map(s, profile.id)
        cells = await repos.get_cells_by_entity_ids(s, data)
        values: dict[str, dict[str, str]] = {}
        for cell in cells:
            by_sample = data[cell.entity_id]  # type: ignore[index]
            values[cell.name] = {stable_by_id[sid]: v for sid, v in by_sample.items()}
        return cls(
            profile_stable_id=profile.stable_id,
            sample_ids=[stable_by_id[sid] for sid in order],
            entity_names=[cell.name for cell in cells],
            external_ids={cell.name: cell.external_id for cell in cells},
            _values=values,
        )


async def _stable_ids(s: AsyncSession, sample_order: list[int]) -> dict[int, str]:
    samples = await repos.get_samples_by_ids(s, sample_order)
    return {sid: samples[sid].stable_id if sid in samples else str(sid) for sid in sample_order}


async def _get_profile(s: AsyncSession, stable_id: str) -> models.CellProfile:
    profile = await repos.get_profile_by_stable_id(s, stable_id)
    if profile is None:
        raise ProfileNotFoundError(f"No profile with stable id {stable_id}")
    return profile


async def load_profile_data(s: AsyncSession, stable_id: str) -> ProfileData:
    return await ProfileData.load(s, await _get_profile(s, stable_id))


async def export_profile(
    s: AsyncSession, stable_id: str, out: TextIO, *, page_size: int | None = None
) -> int:
    """Write ``UNIQUE_NAME, UNIQUE_ID, <samples...>`` rows for a profile.

    Rows are read in pages of ``page_size`` (default: the configured
    ``alteration_page_size``). Returns the number of data rows written.
    """
    profile = await _get_profile(s, stable_id)
    page_size = page_size or load_settings().alteration_page_size
    order = await alterations.get_sample_order(s, profile.id)
    stable_by_id = await _stable_ids(s, order)
    out.write("\t".join(["UNIQUE_NAME", "UNIQUE_ID", *(stable_by_id[sid] for sid in order)]) + "\n")
    written = 0
    async for page in alterations.iter_alteration_pages(s, profile.id, page_size):
        cells = {c.entity_id: c for c in await repos.get_cells_by_entity_ids(s, [e for e, _ in page])}
        for entity_id, by_sample in page:
            cell = cells.get(entity_id)
            if cell is None:
                log.warning("exporter.row.orphaned", profile=stable_id, entity_id=entity_id)
                continue
            external_id = "" if cell.external_id is None else str(cell.external_id)
            out.write("\t".join([cell.name, external_id, *codec.value_row(by_sample, order)]) + "\n")
            written += 1
    log.info("exporter.profile.written", profile=stable_id, rows=written, page_size=page_size)
    return written
