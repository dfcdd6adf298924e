"""Profile-scoped storage of packed alteration rows and sample ordering.

Rows are keyed by ``(profile_id, entity_id)``. Values are kept packed (see
``Cellmatrix.codec``) and positionally aligned with the profile's persisted
sample order, which is written once per profile.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Sequence

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from Cellmatrix import codec, models
from Cellmatrix.errors import ProfileSamplesMissingError, SampleOrderAlreadySetError
from Cellmatrix.metrics import inc_counter
from Cellmatrix.repos import get_cells_by_entity_ids
from Cellmatrix.schemas import CanonicalEntity

log = structlog.get_logger()

DEFAULT_PAGE_SIZE = 3000


# --- Sample order -----------------------------------------------------------


async def set_sample_order(s: AsyncSession, profile_id: int, sample_ids: Sequence[int]) -> int:
    existing = await s.get(models.CellProfileSamples, profile_id)
    if existing is not None:
        raise SampleOrderAlreadySetError(
            f"Profile {profile_id} already has a sample order; delete it first"
        )
    s.add(
        models.CellProfileSamples(
            profile_id=profile_id,
            ordered_sample_list=codec.pack([str(i) for i in sample_ids]),
        )
    )
    await s.flush()
    return 1


async def get_sample_order(s: AsyncSession, profile_id: int) -> list[int]:
    row = await s.get(models.CellProfileSamples, profile_id)
    if row is None:
        return []
    return [int(part) for part in codec.split_packed(row.ordered_sample_list)]


async def delete_sample_order(s: AsyncSession, profile_id: int) -> int:
    res = await s.execute(
        delete(models.CellProfileSamples).where(models.CellProfileSamples.profile_id == profile_id)
    )
    return res.rowcount or 0


# --- Sample <-> profile links ------------------------------------------------


async def sample_in_profile(s: AsyncSession, sample_id: int, profile_id: int) -> bool:
    q = await s.execute(
        select(models.SampleCellProfile.id).where(
            models.SampleCellProfile.sample_id == sample_id,
            models.SampleCellProfile.profile_id == profile_id,
        )
    )
    return q.scalar_one_or_none() is not None


async def link_sample_to_profile(
    s: AsyncSession, sample_id: int, profile_id: int, panel_id: int | None = None
) -> int:
    """Link a sample to a profile. Returns 0 when the link already exists."""
    if await sample_in_profile(s, sample_id, profile_id):
        return 0
    s.add(models.SampleCellProfile(sample_id=sample_id, profile_id=profile_id, panel_id=panel_id))
    await s.flush()
    return 1


async def count_samples_in_profile(s: AsyncSession, profile_id: int) -> int:
    q = await s.execute(
        select(func.count())
        .select_from(models.SampleCellProfile)
        .where(models.SampleCellProfile.profile_id == profile_id)
    )
    return int(q.scalar_one())


async def sample_ids_in_profile(s: AsyncSession, profile_id: int) -> list[int]:
    q = await s.execute(
        select(models.SampleCellProfile.sample_id)
        .where(models.SampleCellProfile.profile_id == profile_id)
        .order_by(models.SampleCellProfile.sample_id)
    )
    return list(q.scalars().all())


# --- Alteration rows ---------------------------------------------------------


async def alteration_exists(s: AsyncSession, profile_id: int, entity_id: int) -> bool:
    return await s.get(models.CellAlteration, (profile_id, entity_id)) is not None


async def insert_alteration(s: AsyncSession, profile_id: int, entity_id: int, packed: str) -> int:
    s.add(models.CellAlteration(profile_id=profile_id, entity_id=entity_id, packed=packed))
    await s.flush()
    return 1


async def get_alteration_map(
    s: AsyncSession, profile_id: int, entity_ids: Iterable[int] | None = None
) -> dict[int, dict[int, str]]:
    """Return ``entity_id -> {sample_id: value}`` for a profile.

    With ``entity_ids`` the result is limited to those entities; entities
    without a stored row are absent.
    """
    sample_order = await get_sample_order(s, profile_id)
    if not sample_order:
        raise ProfileSamplesMissingError(f"Could not find any samples for profile {profile_id}")
    stmt = select(models.CellAlteration).where(models.CellAlteration.profile_id == profile_id)
    if entity_ids is not None:
        ids = list(entity_ids)
        if not ids:
            return {}
        stmt = stmt.where(models.CellAlteration.entity_id.in_(ids))
    q = await s.execute(stmt.order_by(models.CellAlteration.entity_id))
    return {row.entity_id: codec.unpack(row.packed, sample_order) for row in q.scalars().all()}


async def get_value_row(
    s: AsyncSession, profile_id: int, entity_id: int, sample_ids: Sequence[int]
) -> list[str]:
    """Values of one entity aligned to ``sample_ids``; unmeasured samples read ``NaN``."""
    data = await get_alteration_map(s, profile_id, [entity_id])
    return codec.value_row(data.get(entity_id, {}), sample_ids)


async def iter_alteration_pages(
    s: AsyncSession, profile_id: int, page_size: int = DEFAULT_PAGE_SIZE
) -> AsyncIterator[list[tuple[int, dict[int, str]]]]:
    """Yield pages of ``(entity_id, {sample_id: value})`` ordered by entity id."""
    sample_order = await get_sample_order(s, profile_id)
    if not sample_order:
        raise ProfileSamplesMissingError(f"Could not find any samples for profile {profile_id}")
    offset = 0
    while True:
        q = await s.execute(
            select(models.CellAlteration)
            .where(models.CellAlteration.profile_id == profile_id)
            .order_by(models.CellAlteration.entity_id)
            .offset(offset)
            .limit(page_size)
        )
        rows = q.scalars().all()
        if not rows:
            return
        inc_counter("alterations.pages.read")
        yield [(row.entity_id, codec.unpack(row.packed, sample_order)) for row in rows]
        offset += len(rows)


async def entity_ids_in_profile(s: AsyncSession, profile_id: int) -> list[int]:
    q = await s.execute(
        select(models.CellAlteration.entity_id)
        .where(models.CellAlteration.profile_id == profile_id)
        .order_by(models.CellAlteration.entity_id)
    )
    return list(q.scalars().all())


async def cells_in_profile(s: AsyncSession, profile_id: int) -> list[CanonicalEntity]:
    return await get_cells_by_entity_ids(s, await entity_ids_in_profile(s, profile_id))


async def count_in_profile(s: AsyncSession, profile_id: int) -> int:
    q = await s.execute(
        select(func.count())
        .select_from(models.CellAlteration)
        .where(models.CellAlteration.profile_id == profile_id)
    )
    return int(q.scalar_one())


async def count_all(s: AsyncSession) -> int:
    q = await s.execute(select(func.count()).select_from(models.CellAlteration))
    return int(q.scalar_one())


async def delete_for_profile(s: AsyncSession, profile_id: int) -> int:
    """Delete every row of a profile and its sample order."""
    res = await s.execute(
        delete(models.CellAlteration).where(models.CellAlteration.profile_id == profile_id)
    )
    await delete_sample_order(s, profile_id)
    deleted = res.rowcount or 0
    log.info("alterations.profile.deleted", profile_id=profile_id, rows=deleted)
    return deleted
