import pytest

from Cellmatrix import alterations
from Cellmatrix.errors import FlushError
from Cellmatrix.metrics import get_counter, reset_counters
from Cellmatrix.writers import (
    ALTERATION_TABLE,
    SAMPLE_LINK_TABLE,
    BufferedWriter,
    TransactionalWriter,
    make_writer,
)


def test_make_writer_selects_strategy():
    assert isinstance(make_writer(True), BufferedWriter)
    assert isinstance(make_writer(False), TransactionalWriter)
    assert make_writer(True).mode == "buffered"
    assert make_writer(False).mode == "immediate"


@pytest.mark.asyncio
async def test_buffered_writer_defers_inserts_until_flush(db, profile, catalog, samples):
    reset_counters()
    writer = BufferedWriter()
    b_cell = catalog["B_CELL"].entity_id
    assert await writer.link_sample(db, samples["S1"], profile.id) == 1
    assert await writer.link_sample(db, samples["S1"], profile.id) == 0
    assert await writer.write_alteration(db, profile.id, b_cell, "1,2,") == 1
    assert writer.pending() == {SAMPLE_LINK_TABLE.name: 1, ALTERATION_TABLE.name: 1}
    assert await alterations.count_in_profile(db, profile.id) == 0

    assert await writer.flush(db) == 2
    assert writer.pending() == {}
    assert await alterations.count_in_profile(db, profile.id) == 1
    assert await alterations.sample_in_profile(db, samples["S1"], profile.id)
    assert get_counter("writer.flush.rows") == 2
    assert await writer.flush(db) == 0


@pytest.mark.asyncio
async def test_buffered_writer_surfaces_constraint_violation_at_flush(db, profile, catalog):
    writer = BufferedWriter()
    b_cell = catalog["B_CELL"].entity_id
    # The buffered path does not check for duplicates when staging
    await writer.write_alteration(db, profile.id, b_cell, "1,")
    await writer.write_alteration(db, profile.id, b_cell, "2,")
    with pytest.raises(FlushError) as exc_info:
        await writer.flush(db)
    assert exc_info.value.table == ALTERATION_TABLE.name
    assert exc_info.value.pending == 2
    assert writer.pending() == {ALTERATION_TABLE.name: 2}


@pytest.mark.asyncio
async def test_transactional_writer_is_idempotent(db, profile, catalog, samples):
    writer = TransactionalWriter()
    b_cell = catalog["B_CELL"].entity_id
    assert await writer.write_alteration(db, profile.id, b_cell, "1,") == 1
    assert await writer.write_alteration(db, profile.id, b_cell, "2,") == 0
    # A fresh writer still sees the stored row
    assert await TransactionalWriter().write_alteration(db, profile.id, b_cell, "3,") == 0
    assert await writer.link_sample(db, samples["S1"], profile.id) == 1
    assert await writer.link_sample(db, samples["S1"], profile.id) == 0
    assert await writer.flush(db) == 0
    data = await alterations.count_in_profile(db, profile.id)
    assert data == 1
