"""Identifier resolution against the cell catalog.

This package exposes the cache and reference-list parsers while keeping
import surfaces minimal.
"""

# ruff: noqa: N999  # Package name uses project-specific casing 'Cellmatrix'

from .cache import IdentityCache, IdentityResolution
from .reference import (
	DisambiguationEntry,
	SubsetEntry,
	parse_disambiguation_lines,
	parse_subset_lines,
)

__all__ = [
	"IdentityCache",
	"IdentityResolution",
	"SubsetEntry",
	"DisambiguationEntry",
	"parse_subset_lines",
	"parse_disambiguation_lines",
]
