# repos.py

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from Cellmatrix import models
from Cellmatrix.errors import EntityNotFoundError
from Cellmatrix.schemas import CanonicalEntity

log = structlog.get_logger()


def _to_entity(cell: models.Cell, aliases: Iterable[str]) -> CanonicalEntity:
    return CanonicalEntity(
        entity_id=cell.entity_id,
        external_id=cell.unique_cell_id,
        name=cell.name,
        aliases=frozenset(aliases),
        type=cell.type,
        organ=cell.organ,
        cell_type_id=cell.cell_type_id,
        anatomy_id=cell.anatomy_id,
        cp_id=cell.cp_id,
    )


async def _aliases_for(s: AsyncSession, entity_id: int) -> list[str]:
    q = await s.execute(
        select(models.CellAlias.alias).where(models.CellAlias.entity_id == entity_id)
    )
    return list(q.scalars().all())


async def _with_aliases(s: AsyncSession, cell: models.Cell | None) -> CanonicalEntity | None:
    if cell is None:
        return None
    return _to_entity(cell, await _aliases_for(s, cell.entity_id))


# --- Entity store -----------------------------------------------------------


async def get_cell_by_entity_id(s: AsyncSession, entity_id: int) -> CanonicalEntity | None:
    q = await s.execute(select(models.Cell).where(models.Cell.entity_id == entity_id))
    return await _with_aliases(s, q.scalar_one_or_none())


async def get_cell_by_external_id(s: AsyncSession, external_id: int) -> CanonicalEntity | None:
    q = await s.execute(select(models.Cell).where(models.Cell.unique_cell_id == external_id))
    return await _with_aliases(s, q.scalar_one_or_none())


async def get_cell_by_name(s: AsyncSession, name: str) -> CanonicalEntity | None:
    q = await s.execute(select(models.Cell).where(models.Cell.name == name.strip().upper()))
    return await _with_aliases(s, q.scalar_one_or_none())


async def get_cells_by_alias(s: AsyncSession, alias: str) -> list[CanonicalEntity]:
    q = await s.execute(
        select(models.Cell)
        .join(models.CellAlias, models.CellAlias.entity_id == models.Cell.entity_id)
        .where(models.CellAlias.alias == alias.strip().upper())
        .order_by(models.Cell.entity_id)
    )
    return [await _with_aliases(s, cell) for cell in q.scalars().all()]  # type: ignore[misc]


async def _hydrate(
    s: AsyncSession, cells: Iterable[models.Cell], entity_ids: list[int] | None = None
) -> list[CanonicalEntity]:
    stmt = select(models.CellAlias.entity_id, models.CellAlias.alias)
    if entity_ids is not None:
        stmt = stmt.where(models.CellAlias.entity_id.in_(entity_ids))
    aliases: dict[int, list[str]] = defaultdict(list)
    for entity_id, alias in (await s.execute(stmt)).all():
        aliases[entity_id].append(alias)
    return [_to_entity(cell, aliases.get(cell.entity_id, ())) for cell in cells]


async def list_cells(s: AsyncSession) -> list[CanonicalEntity]:
    cells = (await s.execute(select(models.Cell).order_by(models.Cell.entity_id))).scalars().all()
    return await _hydrate(s, cells)


async def get_cells_by_entity_ids(s: AsyncSession, entity_ids: Iterable[int]) -> list[CanonicalEntity]:
    ids = list(entity_ids)
    if not ids:
        return []
    cells = (
        await s.execute(
            select(models.Cell).where(models.Cell.entity_id.in_(ids)).order_by(models.Cell.entity_id)
        )
    ).scalars().all()
    return await _hydrate(s, cells, ids)


async def count_cells(s: AsyncSession) -> int:
    q = await s.execute(select(func.count()).select_from(models.Cell))
    return int(q.scalar_one())


async def insert_cell(s: AsyncSession, entity: CanonicalEntity) -> tuple[CanonicalEntity, int]:
    """Insert a new cell with its aliases.

    Returns the stored entity (with its new ``entity_id``) and the number of
    rows written: the cell row plus one per alias.
    """
    if entity.external_id is None:
        raise ValueError("external_id must be assigned before insert")
    ent = models.Entity(entity_type="CELL")
    s.add(ent)
    await s.flush()
    s.add(
        models.Cell(
            entity_id=ent.id,
            unique_cell_id=entity.external_id,
            name=entity.name,
            type=entity.type,
            organ=entity.organ,
            cell_type_id=entity.cell_type_id,
            anatomy_id=entity.anatomy_id,
            cp_id=entity.cp_id,
        )
    )
    await s.flush()
    for alias in sorted(entity.aliases):
        s.add(models.CellAlias(entity_id=ent.id, alias=alias))
    await s.flush()
    stored = CanonicalEntity(
        entity_id=ent.id,
        external_id=entity.external_id,
        name=entity.name,
        aliases=entity.aliases,
        type=entity.type,
        organ=entity.organ,
        cell_type_id=entity.cell_type_id,
        anatomy_id=entity.anatomy_id,
        cp_id=entity.cp_id,
    )
    return stored, 1 + len(entity.aliases)


async def update_cell(s: AsyncSession, entity_id: int, entity: CanonicalEntity) -> tuple[CanonicalEntity, int]:
    """Refresh attributes of an existing cell and add aliases it lacks.

    Aliases already stored are kept; the returned entity carries the union.
    The row count covers the updated cell row plus each new alias.
    """
    cell = await s.get(models.Cell, entity_id)
    if cell is None:
        raise EntityNotFoundError(f"No cell with entity id {entity_id}")
    cell.name = entity.name
    cell.type = entity.type
    cell.organ = entity.organ
    cell.cell_type_id = entity.cell_type_id
    cell.anatomy_id = entity.anatomy_id
    cell.cp_id = entity.cp_id
    existing = set(await _aliases_for(s, entity_id))
    new_aliases = sorted(entity.aliases - existing - {entity.name})
    for alias in new_aliases:
        s.add(models.CellAlias(entity_id=entity_id, alias=alias))
    await s.flush()
    merged = await get_cell_by_entity_id(s, entity_id)
    return merged, 1 + len(new_aliases)  # type: ignore[return-value]


async def delete_cell(s: AsyncSession, entity_id: int) -> int:
    """Remove a cell with its aliases, its stored alteration rows and its entity row.

    Returns the alias and cell rows deleted.
    """
    await s.execute(delete(models.CellAlteration).where(models.CellAlteration.entity_id == entity_id))
    res_alias = await s.execute(
        delete(models.CellAlias).where(models.CellAlias.entity_id == entity_id)
    )
    res_cell = await s.execute(delete(models.Cell).where(models.Cell.entity_id == entity_id))
    await s.execute(delete(models.Entity).where(models.Entity.id == entity_id))
    await s.flush()
    return (res_alias.rowcount or 0) + (res_cell.rowcount or 0)


async def get_entity_id_for_external_id(s: AsyncSession, external_id: int) -> int:
    q = await s.execute(
        select(models.Cell.entity_id).where(models.Cell.unique_cell_id == external_id)
    )
    entity_id = q.scalar_one_or_none()
    if entity_id is None:
        raise EntityNotFoundError(f"No cell with unique id {external_id}")
    return entity_id


async def get_external_id_for_entity_id(s: AsyncSession, entity_id: int) -> int:
    q = await s.execute(
        select(models.Cell.unique_cell_id).where(models.Cell.entity_id == entity_id)
    )
    external_id = q.scalar_one_or_none()
    if external_id is None:
        raise EntityNotFoundError(f"No cell with entity id {entity_id}")
    return external_id


async def next_synthetic_external_id(s: AsyncSession) -> int:
    """Next unused negative unique id: -1, then one below the lowest stored."""
    q = await s.execute(select(func.min(models.Cell.unique_cell_id)))
    lowest = q.scalar_one_or_none()
    if lowest is None or lowest >= 0:
        return -1
    return lowest - 1


# --- Samples ----------------------------------------------------------------


async def add_sample(s: AsyncSession, study_id: str, stable_id: str) -> models.Sample:
    q = await s.execute(
        select(models.Sample).where(
            models.Sample.study_id == study_id, models.Sample.stable_id == stable_id
        )
    )
    obj = q.scalar_one_or_none()
    if obj:
        return obj
    obj = models.Sample(study_id=study_id, stable_id=stable_id)
    s.add(obj)
    await s.flush()
    return obj


async def get_sample(s: AsyncSession, study_id: str, stable_id: str) -> models.Sample | None:
    q = await s.execute(
        select(models.Sample).where(
            models.Sample.study_id == study_id, models.Sample.stable_id == stable_id
        )
    )
    return q.scalar_one_or_none()


async def get_samples_by_ids(s: AsyncSession, sample_ids: Iterable[int]) -> dict[int, models.Sample]:
    ids = list(sample_ids)
    if not ids:
        return {}
    q = await s.execute(select(models.Sample).where(models.Sample.id.in_(ids)))
    return {sample.id: sample for sample in q.scalars().all()}


# --- Profiles ---------------------------------------------------------------


async def add_profile(
    s: AsyncSession,
    *,
    stable_id: str,
    study_id: str,
    alteration_kind: models.AlterationKind,
    name: str,
    description: str = "",
    datatype: str = "",
    show_in_analysis_tab: bool = True,
    target_line: str | None = None,
) -> models.CellProfile:
    obj = models.CellProfile(
        stable_id=stable_id,
        study_id=study_id,
        alteration_kind=alteration_kind,
        name=name,
        description=description,
        datatype=datatype,
        show_in_analysis_tab=show_in_analysis_tab,
        target_line=target_line,
    )
    s.add(obj)
    await s.flush()
    log.info("profile.created", stable_id=stable_id, profile_id=obj.id, study_id=study_id)
    return obj


async def get_profile(s: AsyncSession, profile_id: int) -> models.CellProfile | None:
    return await s.get(models.CellProfile, profile_id)


async def get_profile_by_stable_id(s: AsyncSession, stable_id: str) -> models.CellProfile | None:
    q = await s.execute(
        select(models.CellProfile).where(models.CellProfile.stable_id == stable_id)
    )
    return q.scalar_one_or_none()


async def list_profiles(s: AsyncSession, study_id: str | None = None) -> list[models.CellProfile]:
    stmt = select(models.CellProfile).order_by(models.CellProfile.id)
    if study_id is not None:
        stmt = stmt.where(models.CellProfile.study_id == study_id)
    q = await s.execute(stmt)
    return list(q.scalars().all())


async def count_profiles(s: AsyncSession) -> int:
    q = await s.execute(select(func.count()).select_from(models.CellProfile))
    return int(q.scalar_one())


async def update_profile_name_and_description(
    s: AsyncSession, profile_id: int, *, name: str, description: str
) -> bool:
    obj = await s.get(models.CellProfile, profile_id)
    if obj is None:
        return False
    obj.name = name
    obj.description = description
    await s.flush()
    return True


async def delete_profile(s: AsyncSession, profile_id: int) -> bool:
    """Delete a profile with its rows, sample links and sample order."""
    obj = await s.get(models.CellProfile, profile_id)
    if obj is None:
        return False
    for table in (models.CellAlteration, models.SampleCellProfile, models.CellProfileSamples):
        await s.execute(delete(table).where(table.profile_id == profile_id))
    await s.delete(obj)
    await s.flush()
    log.info("profile.deleted", stable_id=obj.stable_id, profile_id=profile_id)
    return True
