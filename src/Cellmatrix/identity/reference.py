"""Parsers for the two reference lists consumed by the identity cache.

Subset-membership list: ``name[TAB]unique_id`` per line; the id is optional
and, when present, takes precedence over the name.

Disambiguation list: ``identifier[TAB]unique_id`` per line, mapping a raw
identifier that is ambiguous as an alias to the preferred cell.

Both lists ignore blank lines and lines starting with ``#``. Malformed lines
are logged and skipped.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

import structlog

log = structlog.get_logger()

_ID = re.compile(r"-?[0-9]+")


@dataclass(frozen=True)
class SubsetEntry:
    name: str
    external_id: int | None
    line_no: int


@dataclass(frozen=True)
class DisambiguationEntry:
    identifier: str
    external_id: int
    line_no: int


def _data_lines(lines: Iterable[str]) -> Iterator[tuple[int, list[str]]]:
    for line_no, raw in enumerate(lines, start=1):
        line = raw.rstrip("\r\n")
        if not line.strip() or line.startswith("#"):
            continue
        yield line_no, [part.strip() for part in line.split("\t")]


def parse_subset_lines(lines: Iterable[str]) -> Iterator[SubsetEntry]:
    for line_no, parts in _data_lines(lines):
        external_id = None
        if len(parts) >= 2 and parts[1]:
            if not _ID.fullmatch(parts[1]):
                log.warning("identity.reference.malformed", list="subset", line_no=line_no)
                continue
            external_id = int(parts[1])
        yield SubsetEntry(name=parts[0], external_id=external_id, line_no=line_no)


def parse_disambiguation_lines(lines: Iterable[str]) -> Iterator[DisambiguationEntry]:
    for line_no, parts in _data_lines(lines):
        if len(parts) < 2 or not _ID.fullmatch(parts[1]):
            log.warning("identity.reference.malformed", list="disambiguation", line_no=line_no)
            continue
        yield DisambiguationEntry(
            identifier=parts[0], external_id=int(parts[1]), line_no=line_no
        )


def read_lines(path: str | Path) -> list[str]:
    with Path(path).open(encoding="utf-8") as handle:
        return handle.readlines()
