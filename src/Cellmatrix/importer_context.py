"""Per-run bookkeeping for the tab-delimited profile importer.

Every processed line ends in a ``RowOutcome`` carrying a ``Severity``:

* ``FATAL``: the run must abort.
* ``SKIPPED``: the row is not stored; the run continues.
* ``WARNING``: worth reporting, the row (or sample) is still handled.

``ImportRunContext`` aggregates outcomes and counts so the pipeline can build
its ``ImportSummary`` without re-reading logs.
"""

from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field
from typing import Any


class Severity(enum.Enum):
    FATAL = "fatal"
    SKIPPED = "skipped"
    WARNING = "warning"


@dataclass(frozen=True)
class RowOutcome:
    severity: Severity | None
    reason: str
    message: str
    line_no: int | None = None
    stored: bool = False

    @classmethod
    def ok(cls, line_no: int, message: str = "") -> RowOutcome:
        severity = Severity.WARNING if message else None
        return cls(severity, "stored", message, line_no, stored=True)

    @classmethod
    def skipped(cls, reason: str, message: str, line_no: int) -> RowOutcome:
        return cls(Severity.SKIPPED, reason, message, line_no)

    @classmethod
    def fatal(cls, reason: str, message: str, line_no: int | None = None) -> RowOutcome:
        return cls(Severity.FATAL, reason, message, line_no)


@dataclass
class ImportSummary:
    profile_stable_id: str
    writer_mode: str
    samples_linked: int
    samples_filtered: int
    rows_stored: int
    rows_skipped: int
    skip_reasons: dict[str, int]
    warnings: list[str]
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile_stable_id": self.profile_stable_id,
            "writer_mode": self.writer_mode,
            "samples_linked": self.samples_linked,
            "samples_filtered": self.samples_filtered,
            "rows_stored": self.rows_stored,
            "rows_skipped": self.rows_skipped,
            "skip_reasons": dict(self.skip_reasons),
            "warnings": list(self.warnings),
            "duration_ms": self.duration_ms,
        }


@dataclass
class ImportRunContext:
    """Collects outcomes of one import run."""

    profile_id: int
    profile_stable_id: str
    sample_ids: list[int] = field(default_factory=list)
    filtered_columns: list[int] = field(default_factory=list)
    rows_stored: int = 0
    rows_skipped: int = 0
    skip_reasons: Counter[str] = field(default_factory=Counter)
    warnings: list[str] = field(default_factory=list)
    seen_entities: set[int] = field(default_factory=set)

    def record(self, outcome: RowOutcome) -> None:
        if outcome.stored:
            self.rows_stored += 1
        elif outcome.severity is Severity.SKIPPED:
            self.rows_skipped += 1
            self.skip_reasons[outcome.reason] += 1
        if outcome.message:
            prefix = f"line {outcome.line_no}: " if outcome.line_no is not None else ""
            self.warnings.append(prefix + outcome.message)

    def summarize(self, writer_mode: str, duration_ms: int) -> ImportSummary:
        return ImportSummary(
            profile_stable_id=self.profile_stable_id,
            writer_mode=writer_mode,
            samples_linked=len(self.sample_ids),
            samples_filtered=len(self.filtered_columns),
            rows_stored=self.rows_stored,
            rows_skipped=self.rows_skipped,
            skip_reasons=dict(self.skip_reasons),
            warnings=list(self.warnings),
            duration_ms=duration_ms,
        )
