"""End-to-end behavior of the tab-delimited profile importer."""

import pytest

from Cellmatrix import alterations, repos
from Cellmatrix.db import session_scope
from Cellmatrix.errors import SampleOrderAlreadySetError
from Cellmatrix.identity import IdentityCache
from Cellmatrix.importer import (
    HeaderError,
    ImporterError,
    ImportPipeline,
    NoRecordsSavedError,
    UnknownSampleError,
    is_normal_sample,
    parse_header,
)
from Cellmatrix.metrics import get_counter, reset_counters
from Cellmatrix.models import AlterationKind
from Cellmatrix.writers import BufferedWriter, TransactionalWriter


def _lines(*rows: str) -> list[str]:
    return [row + "\n" for row in rows]


async def _run(sm, cache, profile, lines, writer=None):
    pipeline = ImportPipeline(cache, writer or TransactionalWriter())
    async with session_scope(sm) as s:
        return await pipeline.run(s, profile, lines)


async def _stored(sm, profile):
    async with sm() as s:
        order = await alterations.get_sample_order(s, profile.id)
        data = await alterations.get_alteration_map(s, profile.id) if order else {}
    return order, data


def test_parse_header_locates_identifier_and_sample_columns():
    layout = parse_header("UNIQUE_NAME\tUNIQUE_ID\tS1\tS2\n")
    assert (layout.name_index, layout.id_index, layout.sample_start) == (0, 1, 2)
    assert layout.sample_refs == ("S1", "S2")

    layout = parse_header("unique_cell_name\tUNIQUE_CELLSET_ID\tUNIQUE_CELL_ID\tS1")
    assert (layout.name_index, layout.id_index, layout.sample_start) == (0, 2, 3)

    layout = parse_header("UNIQUE_ID\tS1")
    assert (layout.name_index, layout.id_index, layout.sample_start) == (None, 0, 1)


@pytest.mark.parametrize(
    "header", ["CELL\tS1\tS2", "UNIQUE_NAME\tUNIQUE_ID", "UNIQUE_NAME\tUNIQUE_CELLSET_ID"]
)
def test_parse_header_rejects_incomplete_headers(header):
    with pytest.raises(HeaderError):
        parse_header(header)


@pytest.mark.parametrize(
    "ref,expected",
    [
        ("TCGA-A1-A0SB-11", True),
        ("TCGA-A1-A0SB-10A", True),
        ("tcga-a1-a0sb-19", True),
        ("TCGA-A1-A0SB-01", False),
        ("TCGA-A1-A0SB-20", False),
        ("S1", False),
    ],
)
def test_is_normal_sample(ref, expected):
    assert is_normal_sample(ref) is expected


@pytest.mark.asyncio
@pytest.mark.parametrize("writer_cls", [TransactionalWriter, BufferedWriter])
async def test_end_to_end_single_row(sm, cache, profile, samples, catalog, writer_cls):
    summary = await _run(
        sm,
        cache,
        profile,
        _lines("UNIQUE_NAME\tUNIQUE_ID\tS1\tS2", "B_CELL\t1\t200\t400"),
        writer_cls(),
    )
    assert summary.rows_stored == 1
    assert summary.rows_skipped == 0
    assert summary.samples_linked == 2
    assert summary.writer_mode == writer_cls.mode

    order, data = await _stored(sm, profile)
    assert order == [samples["S1"], samples["S2"]]
    assert data == {catalog["B_CELL"].entity_id: {samples["S1"]: "200", samples["S2"]: "400"}}
    async with sm() as s:
        assert await alterations.sample_ids_in_profile(s, profile.id) == sorted(order)


@pytest.mark.asyncio
async def test_duplicate_entity_rows_store_once(sm, cache, profile, samples, catalog):
    reset_counters()
    summary = await _run(
        sm,
        cache,
        profile,
        _lines(
            "UNIQUE_NAME\tUNIQUE_ID\tS1\tS2",
            "B_CELL\t1\t200\t400",
            "B CELLS\t\t1\t2",
        ),
    )
    assert summary.rows_stored == 1
    assert summary.skip_reasons == {"duplicate": 1}
    assert len(summary.warnings) == 1
    assert "line 3" in summary.warnings[0] and "duplicated" in summary.warnings[0]
    assert get_counter("importer.rows.skipped.duplicate") == 1

    _, data = await _stored(sm, profile)
    assert data[catalog["B_CELL"].entity_id][samples["S1"]] == "200"


@pytest.mark.asyncio
async def test_unregistered_normal_samples_are_filtered(sm, cache, profile, samples, catalog):
    summary = await _run(
        sm,
        cache,
        profile,
        _lines(
            "UNIQUE_NAME\tS1\tTCGA-A1-A0SB-11\tS2",
            "B_CELL\t0.5\t9.9\t0.7",
            "BASOPHIL\t0.1\t9.9\t0.2",
        ),
    )
    assert summary.samples_filtered == 1
    assert summary.samples_linked == 2
    order, data = await _stored(sm, profile)
    assert order == [samples["S1"], samples["S2"]]
    assert data[catalog["B_CELL"].entity_id] == {samples["S1"]: "0.5", samples["S2"]: "0.7"}
    assert data[catalog["BASOPHIL"].entity_id] == {samples["S1"]: "0.1", samples["S2"]: "0.2"}


@pytest.mark.asyncio
@pytest.mark.parametrize("ref", ["S9", "TCGA-A1-A0SB-01"])
async def test_unknown_sample_aborts(sm, cache, profile, samples, ref):
    with pytest.raises(UnknownSampleError, match=ref):
        await _run(sm, cache, profile, _lines(f"UNIQUE_NAME\tS1\t{ref}", "B_CELL\t1\t2"))
    order, _ = await _stored(sm, profile)
    assert order == []


@pytest.mark.asyncio
async def test_all_rows_skipped_aborts(sm, cache, profile, samples):
    with pytest.raises(NoRecordsSavedError):
        await _run(
            sm,
            cache,
            profile,
            _lines("UNIQUE_NAME\tS1", "NOT_A_CELL\t1", "ALSO_UNKNOWN\t2"),
        )
    async with sm() as s:
        assert await alterations.count_in_profile(s, profile.id) == 0
        assert await alterations.get_sample_order(s, profile.id) == []


@pytest.mark.asyncio
async def test_empty_file_aborts(sm, cache, profile):
    with pytest.raises(HeaderError):
        await _run(sm, cache, profile, [])


@pytest.mark.asyncio
async def test_row_level_problems_are_skipped(sm, cache, profile, samples, catalog):
    reset_counters()
    summary = await _run(
        sm,
        cache,
        profile,
        _lines(
            "UNIQUE_NAME\tUNIQUE_ID\tS1\tS2",
            "# comment",
            "",
            "B_CELL\t1\t1\t2\t3",
            "B_CELL\tabc\t1\t2",
            "\t\t1\t2",
            "B_CELL///NAIVE_B_CELL\t\t1\t2",
            "BM\t\t1\t2",
            "NOT_A_CELL\t\t1\t2",
            "NAIVE_B_CELL|B NAIVE\t\t3\t4",
            "\t5\t7",
            "MEMORY_B_CELL\t2\tNA\t",
        ),
    )
    assert summary.rows_stored == 3
    assert summary.skip_reasons == {
        "row_too_wide": 1,
        "invalid_unique_id": 1,
        "missing_identifier": 1,
        "composite_identifier": 1,
        "ambiguous": 1,
        "unresolved": 1,
    }
    assert get_counter("importer.rows.skipped") == 6
    assert get_counter("importer.rows.stored") == 3

    order, data = await _stored(sm, profile)
    s1, s2 = order
    assert data[catalog["NAIVE_B_CELL"].entity_id] == {s1: "3", s2: "4"}
    # Short row keeps only the values it has
    assert data[catalog["BASOPHIL"].entity_id] == {s1: "7"}
    assert data[catalog["MEMORY_B_CELL"].entity_id] == {s1: "NA", s2: ""}
    assert catalog["B_CELL"].entity_id not in data


@pytest.mark.asyncio
async def test_value_with_delimiter_is_fatal(sm, cache, profile, samples):
    with pytest.raises(ImporterError, match="delimiter"):
        await _run(sm, cache, profile, _lines("UNIQUE_NAME\tS1\tS2", "B_CELL\t1,5\t2"))


@pytest.mark.asyncio
async def test_target_line_limits_imported_rows(sm, cache, samples, catalog):
    async with session_scope(sm) as s:
        profile = await repos.add_profile(
            s,
            stable_id="brca_tcga_cibersort_b",
            study_id="brca_tcga",
            alteration_kind=AlterationKind.CELL_RELATIVE_ABUNDANCE,
            name="B cells only",
            target_line="B_CELL",
        )
    summary = await _run(
        sm,
        cache,
        profile,
        _lines("UNIQUE_NAME\tS1", "BASOPHIL\t1", "B_CELL\t2"),
    )
    assert summary.rows_stored == 1
    assert summary.skip_reasons == {"target_line": 1}
    assert summary.warnings == []
    _, data = await _stored(sm, profile)
    assert list(data) == [catalog["B_CELL"].entity_id]


@pytest.mark.asyncio
async def test_reimport_into_same_profile(sm, cache, profile, samples):
    lines = _lines("UNIQUE_NAME\tS1", "B_CELL\t1")
    await _run(sm, cache, profile, lines)
    with pytest.raises(SampleOrderAlreadySetError):
        await _run(sm, cache, profile, lines)

    # With the sample order cleared, rows already stored are skipped
    async with session_scope(sm) as s:
        await alterations.delete_sample_order(s, profile.id)
    with pytest.raises(NoRecordsSavedError):
        await _run(sm, cache, profile, lines)


@pytest.mark.asyncio
async def test_disambiguation_list_resolves_ambiguous_rows(
    sm, catalog, profile, samples, settings, tmp_path
):
    path = tmp_path / "disambiguation.txt"
    path.write_text("BM\t3\n", encoding="utf-8")
    cache = IdentityCache(sm, settings=settings, disambiguation_path=path)
    await cache.rebuild()

    summary = await _run(
        sm,
        cache,
        profile,
        _lines("UNIQUE_NAME\tS1\tS2", "BM\t1\t2", "B_CELL\t3\t4"),
    )
    assert summary.rows_stored == 2
    assert summary.rows_skipped == 0
    assert "ambiguous" not in summary.skip_reasons
    assert summary.warnings == [
        "line 2: Ambiguous symbol BM resolved to ACTIVATED_B_CELL by disambiguation list"
    ]

    _, data = await _stored(sm, profile)
    assert data[catalog["ACTIVATED_B_CELL"].entity_id] == {samples["S1"]: "1", samples["S2"]: "2"}
    assert catalog["MEMORY_B_CELL"].entity_id not in data


@pytest.mark.asyncio
async def test_trailing_empty_fields_do_not_make_a_row_too_wide(
    sm, cache, profile, samples, catalog
):
    summary = await _run(
        sm,
        cache,
        profile,
        _lines("UNIQUE_NAME\tS1\tS2", "B_CELL\t1\t2\t\t", "BASOPHIL\t3\t4\t\t9"),
    )
    assert summary.rows_stored == 1
    assert summary.skip_reasons == {"row_too_wide": 1}

    _, data = await _stored(sm, profile)
    assert data == {catalog["B_CELL"].entity_id: {samples["S1"]: "1", samples["S2"]: "2"}}
