"""Tab-delimited profile data importer.

Streams a matrix file with one row per cell type and one column per sample
into a profile:

1. Read the header and locate the identifier and sample columns.
2. Link every sample column to a registered sample, filtering unregistered
   normal-tissue samples, and persist the profile's sample order once.
3. Stream data rows: resolve each row's cell through the identity cache,
   drop filtered columns, skip duplicates, and hand packed values to the
   write gateway.
4. Flush the gateway and fail the run if nothing was stored.

Row problems are reported as ``RowOutcome`` values and never abort the run;
header, sample and empty-run problems are fatal and raise ``ImporterError``.
"""

from __future__ import annotations

import re
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Cellmatrix import alterations, models, repos
from Cellmatrix.codec import AlterationCodec, InvalidValueError
from Cellmatrix.config import Settings, load_settings
from Cellmatrix.db import session_scope
from Cellmatrix.errors import CellmatrixError
from Cellmatrix.identity import IdentityCache
from Cellmatrix.importer_context import (
    ImportRunContext,
    ImportSummary,
    RowOutcome,
    Severity,
)
from Cellmatrix.metrics import inc_counter, observe_histogram
from Cellmatrix.profiles import load_profile, read_profile_meta
from Cellmatrix.writers import WriteGateway, make_writer

log = structlog.get_logger()

NAME_HEADERS = ("UNIQUE_NAME", "UNIQUE_CELL_NAME")
ID_HEADERS = ("UNIQUE_ID", "UNIQUE_CELL_ID")
CELLSET_HEADER = "UNIQUE_CELLSET_ID"
RESERVED_HEADERS = frozenset({*NAME_HEADERS, *ID_HEADERS, CELLSET_HEADER})
COMPOSITE_MARKERS = ("///", "---")

_UNIQUE_ID = re.compile(r"-?[0-9]+")
# TCGA barcodes: sample type codes 10-19 denote normal tissue
_TCGA_SAMPLE = re.compile(r"^TCGA-[A-Z0-9]{2}-[A-Z0-9]{4}-([0-9]{2})", re.IGNORECASE)


class ImporterError(CellmatrixError):
    """Fatal import failure."""


class HeaderError(ImporterError):
    """The header lacks identifier or sample columns."""


class UnknownSampleError(ImporterError):
    """A sample column does not match any registered sample."""


class NoRecordsSavedError(ImporterError):
    """The run finished without storing a single row."""


_FATAL_ERRORS: dict[str, type[ImporterError]] = {
    "unknown_sample": UnknownSampleError,
    "no_records_saved": NoRecordsSavedError,
}


def is_normal_sample(sample_ref: str) -> bool:
    m = _TCGA_SAMPLE.match(sample_ref.strip())
    return bool(m) and 10 <= int(m.group(1)) < 20


class SampleRegistry(Protocol):
    async def find(
        self, s: AsyncSession, study_id: str, stable_id: str
    ) -> models.Sample | None: ...


class DbSampleRegistry:
    """Sample lookups against the ``samples`` table."""

    async def find(self, s: AsyncSession, study_id: str, stable_id: str) -> models.Sample | None:
        return await repos.get_sample(s, study_id, stable_id)


@dataclass(frozen=True)
class HeaderLayout:
    columns: tuple[str, ...]
    name_index: int | None
    id_index: int | None
    sample_start: int

    @property
    def n_columns(self) -> int:
        return len(self.columns)

    @property
    def sample_refs(self) -> tuple[str, ...]:
        return self.columns[self.sample_start :]


def _find_column(columns: Iterable[str], names: Iterable[str]) -> int | None:
    wanted = {n.upper() for n in names}
    for i, col in enumerate(columns):
        if col.strip().upper() in wanted:
            return i
    return None


def parse_header(line: str) -> HeaderLayout:
    """Locate identifier columns and the first sample column of a header line."""
    columns = tuple(line.rstrip("\r\n").split("\t"))
    name_index = _find_column(columns, NAME_HEADERS)
    id_index = _find_column(columns, ID_HEADERS)
    if name_index is None and id_index is None:
        raise HeaderError(
            "At least one of the following columns should be present: "
            + " or ".join(NAME_HEADERS[:1] + ID_HEADERS[:1])
        )
    cellset_index = _find_column(columns, (CELLSET_HEADER,))
    last_reserved = max(i for i in (name_index, id_index, cellset_index) if i is not None)
    for i in range(last_reserved + 1, len(columns)):
        if columns[i].strip().upper() not in RESERVED_HEADERS:
            return HeaderLayout(columns, name_index, id_index, i)
    raise HeaderError("Could not find a sample column in the header")


def _field(parts: list[str], index: int | None) -> str | None:
    if index is None or index >= len(parts):
        return None
    value = parts[index].strip()
    return value or None


class ImportPipeline:
    """Import one data file into one profile.

    The identity cache and write gateway are supplied by the caller; the
    cache must already be built.
    """

    def __init__(
        self,
        cache: IdentityCache,
        writer: WriteGateway,
        *,
        sample_registry: SampleRegistry | None = None,
        panel_id: int | None = None,
    ):
        self.cache = cache
        self.writer = writer
        self.sample_registry = sample_registry or DbSampleRegistry()
        self.panel_id = panel_id

    async def run_file(
        self, s: AsyncSession, profile: models.CellProfile, path: str | Path
    ) -> ImportSummary:
        with Path(path).open(encoding="utf-8", newline="") as handle:
            return await self.run(s, profile, handle)

    async def run(
        self, s: AsyncSession, profile: models.CellProfile, lines: Iterable[str]
    ) -> ImportSummary:
        start = time.monotonic()
        ctx = ImportRunContext(profile_id=profile.id, profile_stable_id=profile.stable_id)
        with structlog.contextvars.bound_contextvars(profile=profile.stable_id):
            it = iter(lines)
            header = next(it, None)
            if header is None or not header.strip():
                raise HeaderError("Data file is empty")
            layout = parse_header(header)
            log.info(
                "importer.header",
                samples=len(layout.sample_refs),
                name_index=layout.name_index,
                id_index=layout.id_index,
                sample_start=layout.sample_start,
            )

            await self.link_samples(s, profile, layout, ctx)
            codec = AlterationCodec(ctx.sample_ids)
            filtered = frozenset(ctx.filtered_columns)

            for line_no, raw in enumerate(it, start=2):
                outcome = await self.process_line(
                    s, profile, raw, line_no, layout, filtered, codec, ctx
                )
                if outcome is None:
                    continue
                if outcome.severity is Severity.FATAL:
                    self._fail(outcome)
                ctx.record(outcome)

            await self.finalize(s, ctx)

        duration_ms = int((time.monotonic() - start) * 1000)
        observe_histogram("importer.duration_ms", duration_ms)
        summary = ctx.summarize(self.writer.mode, duration_ms)
        log.info(
            "importer.complete",
            profile=profile.stable_id,
            rows_stored=summary.rows_stored,
            rows_skipped=summary.rows_skipped,
            samples_linked=summary.samples_linked,
            samples_filtered=summary.samples_filtered,
            duration_ms=duration_ms,
        )
        return summary

    async def link_samples(
        self,
        s: AsyncSession,
        profile: models.CellProfile,
        layout: HeaderLayout,
        ctx: ImportRunContext,
    ) -> None:
        for col, ref in enumerate(layout.sample_refs):
            sample = await self.sample_registry.find(s, profile.study_id, ref.strip())
            if sample is None:
                if is_normal_sample(ref):
                    ctx.filtered_columns.append(col)
                    inc_counter("importer.samples.filtered_normal")
                    log.info("importer.sample.filtered_normal", sample=ref)
                    continue
                self._fail(
                    RowOutcome.fatal("unknown_sample", f"Unknown sample id '{ref}' in data file", 1)
                )
            await self.writer.link_sample(s, sample.id, profile.id, self.panel_id)
            ctx.sample_ids.append(sample.id)
        await alterations.set_sample_order(s, profile.id, ctx.sample_ids)
        log.info(
            "importer.samples.linked",
            linked=len(ctx.sample_ids),
            filtered=len(ctx.filtered_columns),
        )

    async def process_line(
        self,
        s: AsyncSession,
        profile: models.CellProfile,
        raw: str,
        line_no: int,
        layout: HeaderLayout,
        filtered: frozenset[int],
        codec: AlterationCodec,
        ctx: ImportRunContext,
    ) -> RowOutcome | None:
        """Handle one data line. Returns None for comment and blank lines."""
        line = raw.rstrip("\r\n")
        if not line.strip() or line.startswith("#"):
            return None
        parts = line.split("\t")
        # Empty trailing fields past the header do not make a row too wide
        if len(parts) > layout.n_columns and any(parts[layout.n_columns :]):
            return self._skip(
                "row_too_wide",
                f"Ignoring line with more fields ({len(parts)}) than specified in the"
                f" headers ({layout.n_columns})",
                line_no,
            )
        if profile.target_line is not None and parts[0] != profile.target_line:
            return self._skip("target_line", "", line_no)

        values = parts[layout.sample_start : min(len(parts), layout.n_columns)]
        if filtered:
            values = [v for i, v in enumerate(values) if i not in filtered]

        name = _field(parts, layout.name_index)
        unique_id = _field(parts, layout.id_index)
        if unique_id is not None and not _UNIQUE_ID.fullmatch(unique_id):
            return self._skip(
                "invalid_unique_id", f"Ignoring line with invalid UNIQUE_ID {unique_id}", line_no
            )
        if name is None and unique_id is None:
            return self._skip(
                "missing_identifier", "Ignoring line with no UNIQUE_NAME or UNIQUE_ID value", line_no
            )
        if name is not None and any(marker in name for marker in COMPOSITE_MARKERS):
            return self._skip("composite_identifier", f"Ignoring cell ID: {name}", line_no)

        entity = None
        resolution = None
        if unique_id is not None:
            entity = self.cache.get_by_external_id(int(unique_id))
        symbol = name
        if entity is None and name is not None:
            # Several symbols separated by '|': use the first one
            pipe = name.find("|")
            if pipe > 0:
                symbol = name[:pipe]
            resolution = self.cache.resolve(symbol, warn_on_ambiguous=True)
            entity = resolution.entity
        if entity is None:
            given = symbol if symbol is not None else unique_id
            if resolution is not None and resolution.ambiguous:
                return self._skip(
                    "ambiguous",
                    f"Cell symbol {given} found to be ambiguous. Record will be skipped.",
                    line_no,
                )
            return self._skip(
                "unresolved", f"Cell not found for: [{given}]. Record will be skipped.", line_no
            )

        if entity.entity_id in ctx.seen_entities:
            alias_note = f" (given as alias in your file as: {symbol})" if symbol else ""
            return self._skip(
                "duplicate",
                f"Cell {entity.name} ({entity.external_id}){alias_note} found to be duplicated"
                " in your file. Duplicated row will be ignored!",
                line_no,
            )

        try:
            packed = codec.pack(values)
        except InvalidValueError as exc:
            return RowOutcome.fatal("invalid_value", str(exc), line_no)
        rows = await self.writer.write_alteration(s, profile.id, entity.entity_id, packed)  # type: ignore[arg-type]
        if rows == 0:
            return self._skip(
                "already_stored", f"Data for cell {entity.name} is already stored", line_no
            )
        ctx.seen_entities.add(entity.entity_id)  # type: ignore[arg-type]
        inc_counter("importer.rows.stored")
        note = ""
        if resolution is not None and resolution.via_disambiguation:
            note = f"Ambiguous symbol {symbol} resolved to {entity.name} by disambiguation list"
        return RowOutcome.ok(line_no, note)

    async def finalize(self, s: AsyncSession, ctx: ImportRunContext) -> None:
        flushed = await self.writer.flush(s)
        if flushed:
            log.info("importer.flushed", rows=flushed)
        if ctx.rows_stored == 0:
            self._fail(
                RowOutcome.fatal(
                    "no_records_saved",
                    "Something has gone wrong! I did not save any records to the database!",
                )
            )

    def _skip(self, reason: str, message: str, line_no: int) -> RowOutcome:
        inc_counter("importer.rows.skipped")
        inc_counter(f"importer.rows.skipped.{reason}")
        if message:
            log.warning("importer.row.skipped", line_no=line_no, reason=reason, detail=message)
        return RowOutcome.skipped(reason, message, line_no)

    def _fail(self, outcome: RowOutcome) -> NoReturn:
        inc_counter("importer.fatal")
        log.error("importer.fatal", reason=outcome.reason, line_no=outcome.line_no, detail=outcome.message)
        raise _FATAL_ERRORS.get(outcome.reason, ImporterError)(outcome.message)


async def run_import_with_database(
    data_path: str | Path,
    meta_path: str | Path,
    *,
    bulk_load: bool | None = None,
    cache: IdentityCache | None = None,
    settings: Settings | None = None,
) -> ImportSummary:
    """Load the profile named by a meta file and import a data file into it."""
    settings = settings or load_settings()
    bulk = settings.importer_bulk_load if bulk_load is None else bulk_load
    meta = read_profile_meta(meta_path)
    cache = cache or IdentityCache(settings=settings)
    await cache.ensure_built()
    async with session_scope() as s:
        profile = await load_profile(s, meta)
        log.info(
            "importer.start",
            data=str(data_path),
            profile=profile.stable_id,
            profile_id=profile.id,
            alteration_kind=profile.alteration_kind.value,
            writer="buffered" if bulk else "immediate",
        )
        pipeline = ImportPipeline(cache, make_writer(bulk))
        return await pipeline.run_file(s, profile, data_path)
