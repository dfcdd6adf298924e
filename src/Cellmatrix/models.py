# models.py

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from Cellmatrix.db import Base


class AlterationKind(enum.Enum):
    CELL_RELATIVE_ABUNDANCE = "CELL_RELATIVE_ABUNDANCE"
    MRNA_EXPRESSION = "MRNA_EXPRESSION"
    PROTEIN_LEVEL = "PROTEIN_LEVEL"
    PROTEIN_ARRAY_PROTEIN_LEVEL = "PROTEIN_ARRAY_PROTEIN_LEVEL"
    PHOSPHORYLATION = "PHOSPHORYLATION"
    GENESET_SCORE = "GENESET_SCORE"
    MUTATION_EXTENDED = "MUTATION_EXTENDED"
    MUTATION_UNCALLED = "MUTATION_UNCALLED"
    FUSION = "FUSION"


class Entity(Base):
    """Surrogate key source shared by every kind of measured entity."""

    __tablename__ = "entities"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), default="CELL")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class Cell(Base):
    __tablename__ = "cells"
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("entities.id", ondelete="CASCADE"), primary_key=True
    )
    # Domain identifier; negative when synthesized for an unknown cell
    unique_cell_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    # Stored upper-cased so uniqueness is case-insensitive
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    organ: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cell_type_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    anatomy_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cp_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class CellAlias(Base):
    __tablename__ = "cell_aliases"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("cells.entity_id", ondelete="CASCADE"), index=True
    )
    alias: Mapped[str] = mapped_column(String(255), index=True)

    __table_args__ = (UniqueConstraint("entity_id", "alias", name="uq_cell_alias"),)


class Sample(Base):
    __tablename__ = "samples"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    study_id: Mapped[str] = mapped_column(String(128), index=True)
    stable_id: Mapped[str] = mapped_column(String(128))

    __table_args__ = (UniqueConstraint("study_id", "stable_id", name="uq_sample_stable"),)


class CellProfile(Base):
    __tablename__ = "cell_profiles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stable_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    study_id: Mapped[str] = mapped_column(String(128), index=True)
    alteration_kind: Mapped[AlterationKind] = mapped_column(SAEnum(AlterationKind))
    datatype: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    show_in_analysis_tab: Mapped[bool] = mapped_column(Boolean, default=True)
    target_line: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class CellProfileSamples(Base):
    """Fixed sample order of a profile, stored as comma-joined sample ids."""

    __tablename__ = "cell_profile_samples"
    profile_id: Mapped[int] = mapped_column(
        ForeignKey("cell_profiles.id", ondelete="CASCADE"), primary_key=True
    )
    ordered_sample_list: Mapped[str] = mapped_column(Text)


class SampleCellProfile(Base):
    __tablename__ = "sample_cell_profiles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sample_id: Mapped[int] = mapped_column(ForeignKey("samples.id", ondelete="CASCADE"))
    profile_id: Mapped[int] = mapped_column(
        ForeignKey("cell_profiles.id", ondelete="CASCADE"), index=True
    )
    panel_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("sample_id", "profile_id", name="uq_sample_cell_profile"),
    )


class CellAlteration(Base):
    """Packed per-entity value row of one profile."""

    __tablename__ = "cell_alterations"
    profile_id: Mapped[int] = mapped_column(
        ForeignKey("cell_profiles.id", ondelete="CASCADE"), primary_key=True
    )
    entity_id: Mapped[int] = mapped_column(
        ForeignKey("entities.id", ondelete="CASCADE"), primary_key=True
    )
    packed: Mapped[str] = mapped_column("alteration_values", Text)
