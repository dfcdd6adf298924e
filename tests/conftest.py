# tests/conftest.py

import os
from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Point the app at a process-local in-memory DB before any app module reads
# settings, and keep test runs from writing log files into the workspace.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOGGING_ENABLED"] = "false"

import Cellmatrix.db as _db  # noqa: E402

_db.DATABASE_URL = os.environ["DATABASE_URL"]
_db._engine = None
_db._sessionmaker = None
_db._schema_initialized = False

# Import models so all ORM tables are registered on Base.metadata before create_all
from Cellmatrix import models as _models  # noqa: F401,E402
from Cellmatrix import repos  # noqa: E402
from Cellmatrix.config import Settings  # noqa: E402
from Cellmatrix.db import (  # noqa: E402
    Base,
    dispose_engine,
    get_engine,
    get_sessionmaker,
    session_scope,
)
from Cellmatrix.identity import IdentityCache  # noqa: E402
from Cellmatrix.models import AlterationKind  # noqa: E402
from Cellmatrix.schemas import CanonicalEntity  # noqa: E402

STUDY = "brca_tcga"

# name -> (unique id, aliases, organ)
CATALOG = {
    "B_CELL": (1, {"B CELLS"}, None),
    "MEMORY_B_CELL": (2, {"B MEMORY", "BM"}, "blood"),
    "ACTIVATED_B_CELL": (3, {"BM"}, "lymph node"),
    "NAIVE_B_CELL": (4, {"B NAIVE"}, None),
    "BASOPHIL": (5, set(), None),
}


@pytest.fixture
async def sm() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Fresh in-memory database per test; yields the app sessionmaker."""
    _db._engine = None
    _db._sessionmaker = None
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _db._schema_initialized = True
    try:
        yield get_sessionmaker()
    finally:
        await dispose_engine()


@pytest.fixture
async def db(sm) -> AsyncIterator[AsyncSession]:
    async with sm() as s:
        try:
            yield s
        finally:
            # Ensure clean rollback and explicit close to release aiosqlite connection
            await s.rollback()
            await s.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(logging_enabled=False)


async def seed_cells(sm, catalog=CATALOG) -> dict[str, CanonicalEntity]:
    out: dict[str, CanonicalEntity] = {}
    async with session_scope(sm) as s:
        for name, (unique_id, aliases, organ) in catalog.items():
            stored, _ = await repos.insert_cell(
                s,
                CanonicalEntity(
                    entity_id=None,
                    external_id=unique_id,
                    name=name,
                    aliases=frozenset(aliases),
                    organ=organ,
                    type="CELL_TYPE",
                ),
            )
            out[name] = stored
    return out


async def seed_samples(sm, stable_ids, study_id: str = STUDY) -> dict[str, int]:
    async with session_scope(sm) as s:
        return {sid: (await repos.add_sample(s, study_id, sid)).id for sid in stable_ids}


@pytest.fixture
async def catalog(sm) -> dict[str, CanonicalEntity]:
    return await seed_cells(sm)


@pytest.fixture
async def samples(sm) -> dict[str, int]:
    return await seed_samples(sm, ["S1", "S2", "S3"])


@pytest.fixture
async def cache(sm, catalog, settings) -> IdentityCache:
    c = IdentityCache(sm, settings=settings)
    await c.rebuild()
    return c


@pytest.fixture
async def profile(sm) -> _models.CellProfile:
    async with session_scope(sm) as s:
        return await repos.add_profile(
            s,
            stable_id=f"{STUDY}_cibersort",
            study_id=STUDY,
            alteration_kind=AlterationKind.CELL_RELATIVE_ABUNDANCE,
            name="CiberSort",
            description="Relative immune cell abundance",
            datatype="CONTINUOUS",
        )
