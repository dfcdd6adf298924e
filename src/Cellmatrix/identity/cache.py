"""In-memory identity cache resolving raw cell identifiers to catalog entries.

The cache keeps an arena of ``CanonicalEntity`` values keyed by entity id and
plain indices pointing into it: name, unique (external) id, alias buckets and
disambiguation overrides. Insert/update/delete write the entity store first,
then re-index only the affected entity. ``rebuild`` scans the store and swaps
in a fresh set of indices.

Resolution never raises; callers interpret empty or ambiguous results.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from Cellmatrix import repos
from Cellmatrix.config import Settings, load_settings
from Cellmatrix.db import get_sessionmaker, session_scope
from Cellmatrix.errors import EntityNotFoundError
from Cellmatrix.identity.reference import (
    parse_disambiguation_lines,
    parse_subset_lines,
    read_lines,
)
from Cellmatrix.metrics import inc_counter, timed
from Cellmatrix.schemas import CanonicalEntity

log = structlog.get_logger()

_NUMERIC = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class IdentityResolution:
    """Outcome of resolving one raw identifier."""

    identifier: str
    candidates: tuple[CanonicalEntity, ...]
    entity: CanonicalEntity | None
    via_disambiguation: bool = False

    @property
    def ambiguous(self) -> bool:
        return self.entity is None and len(self.candidates) > 1


@dataclass
class _Indices:
    entities: dict[int, CanonicalEntity] = field(default_factory=dict)
    by_name: dict[str, int] = field(default_factory=dict)
    by_external: dict[int, int] = field(default_factory=dict)
    by_alias: dict[str, list[int]] = field(default_factory=dict)
    disambiguation: dict[str, int] = field(default_factory=dict)
    subset: set[int] = field(default_factory=set)

    def register(self, entity: CanonicalEntity) -> None:
        eid = entity.entity_id
        if eid is None:
            raise ValueError(f"Cell {entity.name} has no entity id to index")
        if eid in self.entities:
            self.unregister(eid, keep_references=True)
        self.entities[eid] = entity
        self.by_name[entity.name] = eid
        if entity.external_id is not None:
            self.by_external[entity.external_id] = eid
        for alias in entity.aliases:
            bucket = self.by_alias.setdefault(alias, [])
            if eid not in bucket:
                bucket.append(eid)
                bucket.sort()

    def unregister(self, eid: int, *, keep_references: bool = False) -> None:
        entity = self.entities.pop(eid, None)
        if entity is None:
            return
        if self.by_name.get(entity.name) == eid:
            del self.by_name[entity.name]
        if entity.external_id is not None and self.by_external.get(entity.external_id) == eid:
            del self.by_external[entity.external_id]
        for alias in entity.aliases:
            bucket = self.by_alias.get(alias)
            if bucket and eid in bucket:
                bucket.remove(eid)
                if not bucket:
                    del self.by_alias[alias]
        if not keep_references:
            self.subset.discard(eid)
            for key in [k for k, v in self.disambiguation.items() if v == eid]:
                del self.disambiguation[key]


class IdentityCache:
    """Rebuildable identifier index over the cell catalog.

    Construct one per process (or per test) and pass it to the import
    pipeline. ``rebuild`` must run before the first resolution; ``invalidate``
    drops all indices until the next ``rebuild``. Rebuilds and mutations are
    serialized by an ``asyncio.Lock``; lookups are synchronous reads.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        *,
        settings: Settings | None = None,
        subset_path: str | Path | None = None,
        disambiguation_path: str | Path | None = None,
        subset_min_entities: int | None = None,
    ):
        settings = settings or load_settings()
        self._sm = sessionmaker or get_sessionmaker()
        self._subset_path = subset_path or settings.reference_subset_path
        self._disambiguation_path = disambiguation_path or settings.reference_disambiguation_path
        self._subset_min_entities = (
            subset_min_entities
            if subset_min_entities is not None
            else settings.reference_subset_min_entities
        )
        self._idx = _Indices()
        self._built = False
        self._lock = asyncio.Lock()

    # --- lifecycle ----------------------------------------------------------

    @property
    def built(self) -> bool:
        return self._built

    def invalidate(self) -> None:
        self._idx = _Indices()
        self._built = False

    async def rebuild(self) -> int:
        """Re-scan the entity store and reload both reference lists.

        Store errors from the entity scan propagate; failures reading the
        reference lists are logged and leave the corresponding index empty.
        Returns the number of cached entities.
        """
        async with self._lock:
            with timed("identity.cache.scan_ms"):
                async with self._sm() as s:
                    cells = await repos.list_cells(s)
            fresh = _Indices()
            for cell in cells:
                fresh.register(cell)
            if len(fresh.entities) > self._subset_min_entities:
                self._load_subset(fresh)
            self._load_disambiguation(fresh)
            self._idx = fresh
            self._built = True
        inc_counter("identity.cache.rebuilt")
        log.info(
            "identity.cache.rebuilt",
            entities=len(fresh.entities),
            aliases=len(fresh.by_alias),
            subset=len(fresh.subset),
            disambiguation=len(fresh.disambiguation),
        )
        return len(fresh.entities)

    async def ensure_built(self) -> None:
        if not self._built:
            await self.rebuild()

    def _load_subset(self, idx: _Indices) -> None:
        try:
            lines = read_lines(self._subset_path)
        except (OSError, UnicodeDecodeError):
            log.warning("identity.reference.load_failed", path=str(self._subset_path), exc_info=True)
            return
        for entry in parse_subset_lines(lines):
            if entry.external_id is not None:
                eid = idx.by_external.get(entry.external_id)
            else:
                eid = idx.by_name.get(entry.name.upper())
            if eid is None:
                inc_counter("identity.reference.unresolved")
                log.warning(
                    "identity.reference.unresolved",
                    list="subset",
                    name=entry.name,
                    unique_id=entry.external_id,
                    line_no=entry.line_no,
                )
                continue
            idx.subset.add(eid)

    def _load_disambiguation(self, idx: _Indices) -> None:
        try:
            lines = read_lines(self._disambiguation_path)
        except (OSError, UnicodeDecodeError):
            log.warning(
                "identity.reference.load_failed",
                path=str(self._disambiguation_path),
                exc_info=True,
            )
            return
        for entry in parse_disambiguation_lines(lines):
            eid = idx.by_external.get(entry.external_id)
            if eid is None:
                inc_counter("identity.reference.unresolved")
                log.warning(
                    "identity.reference.unresolved",
                    list="disambiguation",
                    identifier=entry.identifier,
                    unique_id=entry.external_id,
                    line_no=entry.line_no,
                )
                continue
            idx.disambiguation[entry.identifier.upper()] = eid

    # --- resolution ---------------------------------------------------------

    def guess(self, identifier: str | int, discriminator: str | None = None) -> list[CanonicalEntity]:
        """Return every entity the identifier could denote.

        Numeric identifiers are tried as unique ids, then the canonical name,
        then aliases. With a discriminator, alias candidates are limited to
        entities whose organ matches it or is unset.
        """
        text = str(identifier).strip()
        if not text:
            return []
        idx = self._idx
        if _NUMERIC.fullmatch(text):
            eid = idx.by_external.get(int(text))
            if eid is not None:
                return [idx.entities[eid]]
        key = text.upper()
        eid = idx.by_name.get(key)
        if eid is not None:
            return [idx.entities[eid]]
        candidates = [idx.entities[e] for e in idx.by_alias.get(key, ())]
        if discriminator is None:
            return candidates
        return [c for c in candidates if c.organ is None or c.organ == discriminator]

    def resolve(
        self,
        identifier: str | int,
        discriminator: str | None = None,
        *,
        warn_on_ambiguous: bool = True,
    ) -> IdentityResolution:
        text = str(identifier).strip()
        candidates = tuple(self.guess(text, discriminator))
        if len(candidates) == 1:
            return IdentityResolution(text, candidates, candidates[0])
        if not candidates:
            return IdentityResolution(text, candidates, None)
        override = self._idx.disambiguation.get(text.upper())
        if override is not None and override in self._idx.entities:
            return IdentityResolution(
                text, candidates, self._idx.entities[override], via_disambiguation=True
            )
        if warn_on_ambiguous:
            inc_counter("identity.resolve.ambiguous")
            log.warning(
                "identity.ambiguous_alias",
                identifier=text,
                entity_ids=[c.entity_id for c in candidates],
                unique_ids=[c.external_id for c in candidates],
            )
        return IdentityResolution(text, candidates, None)

    def resolve_unique(
        self,
        identifier: str | int,
        discriminator: str | None = None,
        warn_on_ambiguous: bool = True,
    ) -> CanonicalEntity | None:
        return self.resolve(identifier, discriminator, warn_on_ambiguous=warn_on_ambiguous).entity

    # --- lookups ------------------------------------------------------------

    def get_by_external_id(self, external_id: int) -> CanonicalEntity | None:
        eid = self._idx.by_external.get(external_id)
        return None if eid is None else self._idx.entities[eid]

    def get_by_entity_id(self, entity_id: int) -> CanonicalEntity | None:
        return self._idx.entities.get(entity_id)

    def get_by_name(self, name: str) -> CanonicalEntity | None:
        eid = self._idx.by_name.get(name.strip().upper())
        return None if eid is None else self._idx.entities[eid]

    def get_by_alias(self, alias: str) -> list[CanonicalEntity]:
        return [self._idx.entities[e] for e in self._idx.by_alias.get(alias.strip().upper(), ())]

    def all_entities(self) -> list[CanonicalEntity]:
        return [self._idx.entities[e] for e in sorted(self._idx.entities)]

    def subset_entities(self) -> list[CanonicalEntity]:
        return [self._idx.entities[e] for e in sorted(self._idx.subset)]

    def is_subset_member(self, entity: CanonicalEntity) -> bool:
        return entity.entity_id in self._idx.subset

    def external_ids_for(self, entities: Iterable[CanonicalEntity]) -> list[int]:
        return [e.external_id for e in entities if e.external_id is not None]

    def entity_id_for(self, external_id: int) -> int:
        eid = self._idx.by_external.get(external_id)
        if eid is None:
            raise EntityNotFoundError(f"No cell with unique id {external_id}")
        return eid

    def external_id_for(self, entity_id: int) -> int:
        entity = self._idx.entities.get(entity_id)
        if entity is None or entity.external_id is None:
            raise EntityNotFoundError(f"No cell with entity id {entity_id}")
        return entity.external_id

    def size(self) -> int:
        return len(self._idx.entities)

    # --- mutations ----------------------------------------------------------

    @staticmethod
    async def _with_external_id(s: AsyncSession, entity: CanonicalEntity) -> CanonicalEntity:
        # Read from the store, the indices may be stale or not built yet
        if entity.external_id is not None and entity.external_id > 0:
            return entity
        same_name = await repos.get_cell_by_name(s, entity.name)
        if same_name is not None:
            return replace(entity, external_id=same_name.external_id)
        fake = await repos.next_synthetic_external_id(s)
        log.info("identity.synthetic_id", name=entity.name, unique_id=fake)
        return replace(entity, external_id=fake)

    async def add(self, entity: CanonicalEntity) -> int:
        """Insert a cell, or update it when its unique id is already stored.

        Cells without a positive unique id reuse the id of a same-named stored
        cell or get the next unused negative id. Returns rows written.
        """
        async with self._lock:
            async with session_scope(self._sm) as s:
                entity = await self._with_external_id(s, entity)
                existing = await repos.get_cell_by_external_id(s, entity.external_id)  # type: ignore[arg-type]
                if existing is not None:
                    stored, rows = await repos.update_cell(s, existing.entity_id, entity)  # type: ignore[arg-type]
                else:
                    stored, rows = await repos.insert_cell(s, entity)
            self._idx.register(stored)
        inc_counter("identity.cache.added")
        return rows

    async def update(self, entity: CanonicalEntity) -> int:
        """Update a stored cell, located by entity id or else by unique id."""
        async with self._lock:
            async with session_scope(self._sm) as s:
                entity_id = entity.entity_id
                if entity_id is None:
                    if entity.external_id is None:
                        raise EntityNotFoundError(f"Cannot locate cell {entity.name}")
                    entity_id = await repos.get_entity_id_for_external_id(s, entity.external_id)
                stored, rows = await repos.update_cell(s, entity_id, entity)
            self._idx.register(stored)
        return rows

    async def delete(self, entity: CanonicalEntity) -> int:
        async with self._lock:
            entity_id = entity.entity_id
            if entity_id is None and entity.external_id is not None:
                entity_id = self._idx.by_external.get(entity.external_id)
            if entity_id is None:
                raise EntityNotFoundError(f"Cannot locate cell {entity.name}")
            async with session_scope(self._sm) as s:
                rows = await repos.delete_cell(s, entity_id)
            self._idx.unregister(entity_id)
        inc_counter("identity.cache.deleted")
        return rows
