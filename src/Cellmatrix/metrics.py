"""In-process counters and histograms for import and cache activity.

Counter names are dotted (``importer.rows.skipped.duplicate``). Histograms
keep <=-style bucket counts plus a running sum and count; ``get_counters``
flattens them into ``histo.<name>.<bucket|sum|count>`` entries.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

DEFAULT_BUCKETS_MS = (10, 50, 100, 500, 1000, 5000, 10000, 60000)


@dataclass
class _Histogram:
    buckets: Counter[str] = field(default_factory=Counter)
    total: int = 0
    count: int = 0


_counters: Counter[str] = Counter()
_histograms: dict[str, _Histogram] = {}


def inc_counter(name: str, value: int = 1) -> None:
    _counters[name] += int(value)


def get_counter(name: str) -> int:
    return _counters[name]


def reset_counters() -> None:
    _counters.clear()
    _histograms.clear()


def _bucket_label(value: int, buckets: Sequence[int]) -> str:
    for upper in buckets:
        if value <= upper:
            return f"le_{upper}"
    return f"gt_{buckets[-1]}"


def observe_histogram(name: str, value: int, *, buckets: Sequence[int] = DEFAULT_BUCKETS_MS) -> None:
    """Record ``value`` (milliseconds by convention); values above the last bound land in ``gt_<last>``."""
    h = _histograms.setdefault(name, _Histogram())
    h.buckets[_bucket_label(value, buckets)] += 1
    h.total += int(value)
    h.count += 1


@contextmanager
def timed(name: str) -> Iterator[None]:
    start = time.monotonic()
    try:
        yield
    finally:
        observe_histogram(name, int((time.monotonic() - start) * 1000))


def get_counters() -> dict[str, int]:
    out = dict(_counters)
    for name, h in _histograms.items():
        for label, n in h.buckets.items():
            out[f"histo.{name}.{label}"] = n
        out[f"histo.{name}.sum"] = h.total
        out[f"histo.{name}.count"] = h.count
    return out
