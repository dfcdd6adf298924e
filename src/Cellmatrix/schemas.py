# schemas.py

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field


def normalize_aliases(name: str, aliases: Iterable[str]) -> frozenset[str]:
    """Upper-case aliases, drop blanks and any alias equal to the canonical name."""
    canonical = name.strip().upper()
    out = set()
    for alias in aliases:
        key = (alias or "").strip().upper()
        if key and key != canonical:
            out.add(key)
    return frozenset(out)


@dataclass(frozen=True)
class CanonicalEntity:
    """A catalog cell type as seen by the identity cache.

    Equality and hashing use ``entity_id`` only. ``name`` is kept upper-cased
    and ``aliases`` never repeat the canonical name.
    """

    entity_id: int | None
    external_id: int | None = field(compare=False)
    name: str = field(compare=False)
    aliases: frozenset[str] = field(default_factory=frozenset, compare=False)
    type: str | None = field(default=None, compare=False)
    organ: str | None = field(default=None, compare=False)
    cell_type_id: str | None = field(default=None, compare=False)
    anatomy_id: str | None = field(default=None, compare=False)
    cp_id: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", self.name.strip().upper())
        object.__setattr__(self, "aliases", normalize_aliases(self.name, self.aliases))
