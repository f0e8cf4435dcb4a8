from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import DBAPIError

from fts_catalog.app.db import staging_session
from fts_catalog.app.errors import StagingInsertError, TableCreationError
from fts_catalog.app.fts_result import AttachmentData, ItemMatch, SearchResultBatch
from fts_catalog.services.search_stager import FlushWindow, match_to_row, prepare_table
from fts_catalog.services.temp_table import StagingRow, create_table

from conftest import make_batch, stream


def test_cross_batch_duplicates_keep_the_larger_score(engine):
    batches = stream(
        make_batch({"x": 0.2, "y": 0.5}),
        make_batch({"x": 0.7}, prefix="n"),
        make_batch({"y": 0.1, "z": 0.3}, prefix="o"),
    )
    with staging_session(engine) as session:
        table = prepare_table(session, batches, chunk_size=1)
        rows = {r.id: r for r in table.rows()}
    assert set(rows) == {"x", "y", "z"}
    assert rows["x"].score == pytest.approx(0.7)
    assert rows["y"].score == pytest.approx(0.5)
    assert rows["x"].snippets == ["snippet for x at 0.7"]


def test_duplicates_inside_one_window_are_collapsed(engine):
    batch = SearchResultBatch(
        count=2,
        highlights={"m1": ("weak",), "m2": ("strong",)},
        matches=(
            ItemMatch("m1", "x", "t", 0.1),
            ItemMatch("m2", "x", "t", 0.9),
        ),
    )
    with staging_session(engine) as session:
        table = prepare_table(session, [batch], chunk_size=10)
        (row,) = table.rows()
        assert table.stats.rows_flushed == 1
        assert table.stats.matches == 2
    assert row.snippets == ["strong"]


def test_empty_stream_yields_an_empty_indexed_table(engine):
    with staging_session(engine) as session:
        table = prepare_table(session, iter(()))
        assert table.count() == 0
        assert table.indexed and table.sealed
        assert table.stats.flushes == 0


def test_chunking_flushes_whenever_the_window_fills(engine):
    scores = {f"item-{n}": n / 100.0 for n in range(25)}
    with staging_session(engine) as session:
        table = prepare_table(session, [make_batch(scores)], chunk_size=10)
        assert table.count() == 25
        stats = table.stats
    assert stats.flushes == 3
    assert stats.rows_flushed == 25
    assert stats.batches == 1
    assert stats.as_dict()["matches"] == 25


def test_default_name_and_chunk_size_come_from_config(engine, _isolated_config):
    _isolated_config.write_text('{"staging_table_name": "hits", "staging_chunk_size": 2}', encoding="utf-8")
    with staging_session(engine) as session:
        table = prepare_table(session, [make_batch({"a": 0.1, "b": 0.2, "c": 0.3})])
        assert table.name == "hits"
        assert table.stats.flushes == 2


def test_attachment_matches_feed_secondary_score(engine):
    batch = make_batch({"x": 0.4}, attachment=True)
    with staging_session(engine) as session:
        (row,) = prepare_table(session, [batch]).rows()
    assert row.score == pytest.approx(0.4)
    assert row.secondary_score == pytest.approx(0.4)


def test_match_without_highlights_has_no_context():
    batch = SearchResultBatch(count=1, matches=(ItemMatch("m1", "x", "t", 0.5),))
    row = match_to_row(batch.matches[0], batch)
    assert row.context is None
    assert row.secondary_score is None


def test_attachment_name_is_kept_in_context():
    match = ItemMatch("m1", "x", "t", 0.5, AttachmentData("att-1", "invoice.pdf"))
    batch = SearchResultBatch(count=1, highlights={"m1": ("total due",)}, matches=(match,))
    row = match_to_row(match, batch)
    assert row.snippets == ["total due"]
    assert '"invoice.pdf"' in row.context


def test_failure_mid_stream_leaves_nothing_behind(engine):
    def broken():
        yield make_batch({"a": 0.1})
        raise RuntimeError("search engine went away")

    with pytest.raises(RuntimeError):
        with staging_session(engine) as session:
            prepare_table(session, broken(), chunk_size=1)

    assert session.temp_tables == ()
    with engine.connect() as conn:
        names = conn.exec_driver_sql("SELECT name FROM sqlite_temp_master WHERE type = 'table'").scalars().all()
    assert "fts_result" not in names


def test_rejected_insert_mid_stream_leaves_nothing_behind(engine):
    batches = stream(make_batch({"a": 0.1, "b": 0.2}), make_batch({None: 0.3}), make_batch({"c": 0.4}))
    staged = None
    with pytest.raises(StagingInsertError) as info:
        with staging_session(engine) as session:
            staged = prepare_table(session, batches, chunk_size=2)

    assert staged is None
    assert isinstance(info.value.__cause__, DBAPIError)
    assert session.temp_tables == ()
    with engine.connect() as conn:
        names = conn.exec_driver_sql("SELECT name FROM sqlite_temp_master WHERE type = 'table'").scalars().all()
    assert names == []


def test_name_collision_propagates(engine):
    with staging_session(engine) as session:
        create_table(session, "fts_result")
        with pytest.raises(TableCreationError):
            prepare_table(session, [make_batch({"a": 0.1})], "fts_result")


def test_staging_under_a_catalog_table_name_is_rejected(catalog):
    with staging_session(catalog) as session:
        with pytest.raises(TableCreationError) as info:
            prepare_table(session, [make_batch({"item-1": 0.5})], "items")
    assert info.value.table_name == "items"


def test_non_positive_chunk_size_is_rejected(engine):
    with staging_session(engine) as session:
        with pytest.raises(ValueError):
            prepare_table(session, [], chunk_size=0)


def test_summary_is_logged_at_info(engine, caplog):
    caplog.set_level(logging.INFO, logger="fts_catalog.services.search_stager")
    with staging_session(engine) as session:
        prepare_table(session, [make_batch({"a": 0.1})])
    assert any("Staged 1 matches" in rec.getMessage() for rec in caplog.records)


def test_flush_window_merges_per_id():
    window = FlushWindow()
    window.add(StagingRow("a", 0.1))
    window.add(StagingRow("a", 0.3))
    window.add(StagingRow("b", 0.2))
    assert len(window) == 2
    drained = {r.id: r.score for r in window.drain()}
    assert drained == {"a": 0.3, "b": 0.2}
    assert len(window) == 0
