"""Packed storage format for per-entity value rows.

A row of values is stored as a single text field: every value followed by
``DELIM``. Unpacking maps position ``i`` back to ``sample_order[i]``. Rows
shorter than the sample order leave the trailing samples unmeasured; rows
longer than the sample order are rejected.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TypeVar

from Cellmatrix.errors import CellmatrixError

DELIM = ","
NAN = "NaN"

K = TypeVar("K")


class InvalidValueError(CellmatrixError):
    """A value contains the reserved delimiter and cannot be packed."""


class PackedFieldTooLongError(CellmatrixError):
    """A packed field holds more values than the profile has samples."""


def pack(values: Sequence[str]) -> str:
    for value in values:
        if DELIM in value:
            raise InvalidValueError(f"Value cannot contain delimiter {DELIM!r}: {value!r}")
    return "".join(value + DELIM for value in values)


def split_packed(packed: str) -> list[str]:
    """Split a packed field into its values, dropping the trailing delimiter."""
    if not packed:
        return []
    parts = packed.split(DELIM)
    if parts[-1] == "":
        parts.pop()
    return parts


def unpack(packed: str, sample_order: Sequence[K]) -> dict[K, str]:
    parts = split_packed(packed)
    if len(parts) > len(sample_order):
        raise PackedFieldTooLongError(
            f"Packed field has {len(parts)} values for {len(sample_order)} samples"
        )
    return {sample_order[i]: value for i, value in enumerate(parts)}


def value_row(values_by_sample: Mapping[K, str], samples: Sequence[K]) -> list[str]:
    """Align a sample->value map to ``samples``, filling gaps with ``NAN``."""
    return [values_by_sample.get(sample, NAN) for sample in samples]


class AlterationCodec:
    """Codec bound to one profile's fixed sample order."""

    def __init__(self, sample_order: Sequence[K]):
        self.sample_order = tuple(sample_order)

    def pack(self, values: Sequence[str]) -> str:
        if len(values) > len(self.sample_order):
            raise PackedFieldTooLongError(
                f"Got {len(values)} values for {len(self.sample_order)} samples"
            )
        return pack(values)

    def unpack(self, packed: str) -> dict:
        return unpack(packed, self.sample_order)
