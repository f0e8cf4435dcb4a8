from __future__ import annotations

import pytest

from fts_catalog.app.catalog import items
from fts_catalog.app.dialects import adapter_for
from fts_catalog.app.errors import UnsupportedConstruct
from fts_catalog.app.query_builder import (
    Batch,
    ColumnDef,
    TableSchema,
    and_,
    asc,
    create_index,
    create_table,
    desc,
    insert_all,
    or_,
    render,
    select,
)
from fts_catalog.services.temp_table import FOLLOW_COLUMNS, SCORE_COLUMNS, staging_schema

DIALECTS = ("postgresql", "mariadb", "sqlite")


def _staged(dialect):
    return adapter_for(dialect).temporary_table(staging_schema("fts_result"))


@pytest.mark.parametrize("dialect", DIALECTS)
def test_values_are_bound_not_interpolated(dialect):
    stmt = select(items.c.id).from_(items).where(items.c.tenant_id == "acme'; drop table items; --")
    sql, params = stmt.render(dialect)
    assert "acme" not in sql
    assert params == ["acme'; drop table items; --"]


@pytest.mark.parametrize("dialect", DIALECTS)
def test_join_order_and_limit(dialect):
    staged = _staged(dialect)
    stmt = (
        select(items.c.id, staged.c.score)
        .from_(items)
        .join(staged, items.c.id == staged.c.id)
        .where(items.c.tenant_id == "acme")
        .order_by(desc(staged.c.score), asc(items.c.id))
        .limit(10)
        .offset(20)
    )
    sql, params = stmt.render(dialect)
    upper = sql.upper()
    assert "JOIN" in upper and "LEFT" not in upper
    assert "ORDER BY" in upper
    assert upper.index("DESC") < upper.index("ASC")
    assert "acme" in params
    assert 10 in params and 20 in params


def test_where_calls_are_and_combined():
    stmt = select(items.c.id).from_(items).where(items.c.tenant_id == "a").where(items.c.state == "open")
    sql, params = stmt.render("sqlite")
    assert " AND " in sql
    assert params == ["a", "open"]


def test_where_skips_none_predicates():
    stmt = select(items.c.id).from_(items).where(None, items.c.tenant_id == "a", None)
    assert len(stmt.predicates) == 1


def test_predicate_helpers_compose():
    pred = or_(items.c.state == "open", and_(items.c.state == "closed", items.c.source == "x"))
    sql, params = select(items.c.id).from_(items).where(pred).render("postgresql")
    assert " OR " in sql and " AND " in sql
    assert params == ["open", "closed", "x"]


def test_left_join_renders_outer_join():
    staged = _staged("sqlite")
    sql, _ = select(items.c.id).from_(items).left_join(staged, items.c.id == staged.c.id).render("sqlite")
    assert "LEFT OUTER JOIN" in sql.upper()


def test_join_without_from_is_rejected():
    staged = _staged("sqlite")
    with pytest.raises(ValueError):
        select(items.c.id).join(staged, items.c.id == staged.c.id).build("sqlite")


def test_nulls_ordering_is_unsupported_on_mariadb():
    staged = _staged("mariadb")
    stmt = select(staged.c.id).from_(staged).order_by(desc(staged.c.score, nulls="last"))
    with pytest.raises(UnsupportedConstruct) as info:
        stmt.render("mariadb")
    assert info.value.dialect == "mariadb"


@pytest.mark.parametrize("dialect", ("postgresql", "sqlite"))
def test_nulls_ordering_renders_where_supported(dialect):
    staged = _staged(dialect)
    sql, _ = select(staged.c.id).from_(staged).order_by(desc(staged.c.score, nulls="last")).render(dialect)
    assert "NULLS LAST" in sql.upper()


def test_builder_objects_are_immutable():
    base = select(items.c.id).from_(items)
    limited = base.limit(5)
    assert base.limit_value is None
    assert limited.limit_value == 5


@pytest.mark.parametrize("dialect", DIALECTS)
def test_merge_insert_renders_dialect_upsert(dialect):
    staged = _staged(dialect)
    rows = [{"id": "a", "score": 0.5, "secondary_score": None, "context": None}]
    sql, params = insert_all(staged, rows, merge="max", greatest=SCORE_COLUMNS, follow=FOLLOW_COLUMNS).render(dialect)
    upper = sql.upper().replace("`", "").replace('"', "")
    if dialect == "mariadb":
        assert "ON DUPLICATE KEY UPDATE" in upper
        # context must be assigned before the score it compares against
        assert upper.index("CONTEXT = CASE") < upper.index("SCORE = GREATEST")
    else:
        assert "ON CONFLICT" in upper and "DO UPDATE" in upper
    assert "a" in params and 0.5 in params


def test_plain_insert_all_renders_one_row_group_per_row():
    staged = _staged("postgresql")
    rows = [{"id": "a", "score": 1.0}, {"id": "b", "score": 2.0}]
    sql, params = insert_all(staged, rows).render("postgresql")
    assert "ON CONFLICT" not in sql.upper()
    assert params == ["a", 1.0, "b", 2.0]


def test_unknown_merge_strategy_is_unsupported():
    staged = _staged("sqlite")
    with pytest.raises(UnsupportedConstruct):
        insert_all(staged, [{"id": "a"}], merge="sum").render("sqlite")


def test_create_table_and_index_ddl():
    schema = TableSchema("stage", (ColumnDef("id", "identifier", nullable=False, primary_key=True), ColumnDef("score", "score")))
    assert "ON COMMIT DROP" in create_table(schema).render("postgresql").sql.upper()
    assert create_index("stage", ["id"]).render("sqlite").sql.upper().startswith("CREATE INDEX IF NOT EXISTS")


def test_table_schema_rejects_bad_names():
    with pytest.raises(ValueError):
        TableSchema("bad name", (ColumnDef("id", "identifier"),))
    with pytest.raises(ValueError):
        ColumnDef("id", "blob")


def test_render_accepts_raw_sqlalchemy_constructs():
    import sqlalchemy as sa

    sql, params = render(sa.select(items.c.id).where(items.c.id == "x"), "mariadb")
    assert "%s" in sql
    assert params == ["x"]


def test_count_drops_ordering_and_paging():
    stmt = select(items.c.id).from_(items).order_by(asc(items.c.id)).limit(5).offset(10)
    sql = str(stmt.count("sqlite").compile(dialect=adapter_for("sqlite").sa_dialect))
    assert "count(*)" in sql.lower()
    assert "ORDER BY" not in sql.upper()
    assert "LIMIT" not in sql.upper()


class TestBatch:
    def test_first_and_next(self):
        page = Batch.first(20)
        assert (page.offset, page.limit) == (0, 20)
        assert page.next() == Batch(20, 20)

    def test_all_is_unbounded(self):
        assert Batch.all().limit is None
        assert Batch.all().next() == Batch.all()

    def test_shifted_adds_offset(self):
        assert Batch(5, 10).shifted(3) == Batch(8, 10)

    def test_rejects_negative_values(self):
        with pytest.raises(ValueError):
            Batch(-1, 10)
        with pytest.raises(ValueError):
            Batch(0, -5)
