import pytest

from Cellmatrix import alterations, repos
from Cellmatrix.codec import NAN
from Cellmatrix.errors import ProfileSamplesMissingError, SampleOrderAlreadySetError
from Cellmatrix.metrics import get_counter, reset_counters


async def _store(db, profile, catalog, samples, rows):
    order = [samples["S1"], samples["S2"], samples["S3"]]
    await alterations.set_sample_order(db, profile.id, order)
    for name, packed in rows.items():
        await alterations.insert_alteration(db, profile.id, catalog[name].entity_id, packed)
    await db.flush()
    return order


@pytest.mark.asyncio
async def test_sample_order_is_written_once(db, profile, samples):
    order = [samples["S3"], samples["S1"]]
    assert await alterations.set_sample_order(db, profile.id, order) == 1
    assert await alterations.get_sample_order(db, profile.id) == order
    with pytest.raises(SampleOrderAlreadySetError):
        await alterations.set_sample_order(db, profile.id, [samples["S2"]])
    assert await alterations.delete_sample_order(db, profile.id) == 1
    assert await alterations.get_sample_order(db, profile.id) == []
    await alterations.set_sample_order(db, profile.id, [samples["S2"]])
    assert await alterations.get_sample_order(db, profile.id) == [samples["S2"]]


@pytest.mark.asyncio
async def test_alteration_map_aligns_values_to_sample_order(db, profile, catalog, samples):
    order = await _store(
        db, profile, catalog, samples, {"B_CELL": "0.1,0.2,0.3,", "BASOPHIL": "1,,"}
    )
    data = await alterations.get_alteration_map(db, profile.id)
    b_cell = catalog["B_CELL"].entity_id
    basophil = catalog["BASOPHIL"].entity_id
    assert data[b_cell] == dict(zip(order, ["0.1", "0.2", "0.3"]))
    assert data[basophil] == {order[0]: "1", order[1]: ""}

    only = await alterations.get_alteration_map(db, profile.id, [basophil, 999])
    assert list(only) == [basophil]
    assert await alterations.get_alteration_map(db, profile.id, []) == {}

    row = await alterations.get_value_row(db, profile.id, basophil, [order[2], order[0]])
    assert row == [NAN, "1"]


@pytest.mark.asyncio
async def test_alteration_map_requires_sample_order(db, profile):
    with pytest.raises(ProfileSamplesMissingError):
        await alterations.get_alteration_map(db, profile.id)


@pytest.mark.asyncio
async def test_pages_counts_and_delete(db, profile, catalog, samples):
    reset_counters()
    await _store(
        db,
        profile,
        catalog,
        samples,
        {name: "1,2,3," for name in ("B_CELL", "MEMORY_B_CELL", "NAIVE_B_CELL")},
    )
    pages = [page async for page in alterations.iter_alteration_pages(db, profile.id, page_size=2)]
    assert [len(p) for p in pages] == [2, 1]
    ids = [entity_id for page in pages for entity_id, _ in page]
    assert ids == sorted(catalog[n].entity_id for n in ("B_CELL", "MEMORY_B_CELL", "NAIVE_B_CELL"))
    assert get_counter("alterations.pages.read") == 2

    assert await alterations.count_in_profile(db, profile.id) == 3
    assert await alterations.count_all(db) == 3
    assert await alterations.entity_ids_in_profile(db, profile.id) == ids
    cells = await alterations.cells_in_profile(db, profile.id)
    assert [c.name for c in cells] == ["B_CELL", "MEMORY_B_CELL", "NAIVE_B_CELL"]
    assert await alterations.alteration_exists(db, profile.id, ids[0])

    assert await alterations.delete_for_profile(db, profile.id) == 3
    assert await alterations.count_in_profile(db, profile.id) == 0
    assert await alterations.get_sample_order(db, profile.id) == []


@pytest.mark.asyncio
async def test_sample_links(db, profile, samples):
    assert await alterations.link_sample_to_profile(db, samples["S2"], profile.id) == 1
    assert await alterations.link_sample_to_profile(db, samples["S1"], profile.id, 7) == 1
    assert await alterations.link_sample_to_profile(db, samples["S2"], profile.id) == 0
    assert await alterations.sample_in_profile(db, samples["S1"], profile.id)
    assert not await alterations.sample_in_profile(db, samples["S3"], profile.id)
    assert await alterations.count_samples_in_profile(db, profile.id) == 2
    assert await alterations.sample_ids_in_profile(db, profile.id) == sorted(
        [samples["S1"], samples["S2"]]
    )


@pytest.mark.asyncio
async def test_delete_profile_removes_dependent_rows(db, profile, catalog, samples):
    await _store(db, profile, catalog, samples, {"B_CELL": "1,2,3,"})
    await alterations.link_sample_to_profile(db, samples["S1"], profile.id)
    assert await repos.delete_profile(db, profile.id)
    assert await repos.get_profile(db, profile.id) is None
    assert await alterations.count_all(db) == 0
    assert await alterations.count_samples_in_profile(db, profile.id) == 0
    assert not await repos.delete_profile(db, profile.id)
