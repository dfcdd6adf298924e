"""Profile meta files and profile loading.

A meta file is a properties file (``key: value`` or ``key=value``)
describing the profile a data file belongs to, e.g.::

    cancer_study_identifier: brca_tcga
    genetic_alteration_type: CELL_RELATIVE_ABUNDANCE
    datatype: CONTINUOUS
    stable_id: cibersort
    profile_name: Relative immune cell abundance values from CiberSort
    profile_description: Blah Blah.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from Cellmatrix import models, repos
from Cellmatrix.errors import CellmatrixError

log = structlog.get_logger()

_KNOWN_KEYS = {
    "cancer_study_identifier",
    "stable_id",
    "genetic_alteration_type",
    "datatype",
    "profile_name",
    "profile_description",
    "show_profile_in_analysis_tab",
    "target_line",
}


class ProfileMetaError(CellmatrixError):
    """A profile meta file is missing required keys or holds invalid values."""


class ProfileMeta(BaseModel):
    cancer_study_identifier: str = Field(min_length=1)
    stable_id: str = Field(min_length=1)
    genetic_alteration_type: models.AlterationKind
    datatype: str = ""
    profile_name: str | None = None
    profile_description: str | None = None
    show_profile_in_analysis_tab: bool = True
    target_line: str | None = None
    extra: dict[str, str] = Field(default_factory=dict)

    @field_validator("show_profile_in_analysis_tab", mode="before")
    @classmethod
    def _only_false_hides(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().upper() != "FALSE"
        return bool(v)

    @model_validator(mode="after")
    def _apply_defaults(self) -> ProfileMeta:
        # Stable ids are namespaced by their study
        prefix = f"{self.cancer_study_identifier}_"
        if not self.stable_id.startswith(prefix):
            self.stable_id = prefix + self.stable_id
        kind = self.genetic_alteration_type.value
        if self.profile_name is None:
            self.profile_name = kind
        if self.profile_description is None:
            self.profile_description = kind
        self.profile_description = self.profile_description.replace("\t", " ")
        return self


def parse_properties(text: str) -> dict[str, str]:
    """Parse ``key: value`` / ``key=value`` lines, trimming keys and values."""
    out: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line[0] in "#!":
            continue
        seps = [i for i in (line.find(":"), line.find("=")) if i > 0]
        if not seps:
            out[line] = ""
            continue
        cut = min(seps)
        out[line[:cut].strip()] = line[cut + 1 :].strip()
    return out


def profile_meta_from_properties(props: dict[str, str]) -> ProfileMeta:
    fields: dict[str, Any] = {k: v for k, v in props.items() if k in _KNOWN_KEYS}
    fields["extra"] = {k: v for k, v in props.items() if k not in _KNOWN_KEYS}
    try:
        return ProfileMeta.model_validate(fields)
    except ValidationError as exc:
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ProfileMetaError(f"Invalid profile meta: {problems}") from exc


def read_profile_meta(path: str | Path) -> ProfileMeta:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ProfileMetaError(f"Meta file '{path}' not found.") from exc
    return profile_meta_from_properties(parse_properties(text))


async def load_profile(s: AsyncSession, meta: ProfileMeta) -> models.CellProfile:
    """Return the profile with the meta's stable id, creating it if needed."""
    existing = await repos.get_profile_by_stable_id(s, meta.stable_id)
    if existing is not None:
        log.info("profile.reused", stable_id=meta.stable_id, profile_id=existing.id)
        return existing
    return await repos.add_profile(
        s,
        stable_id=meta.stable_id,
        study_id=meta.cancer_study_identifier,
        alteration_kind=meta.genetic_alteration_type,
        name=meta.profile_name or meta.genetic_alteration_type.value,
        description=meta.profile_description or "",
        datatype=meta.datatype,
        show_in_analysis_tab=meta.show_profile_in_analysis_tab,
        target_line=meta.target_line,
    )
