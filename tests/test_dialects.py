from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fts_catalog.app.dialects import (
    MariaDbAdapter,
    PostgresAdapter,
    SqliteAdapter,
    adapter_for,
    known_dialects,
    resolve_adapter,
)
from fts_catalog.app.errors import DialectMismatchError, UnsupportedConstruct
from fts_catalog.services.temp_table import staging_schema


def test_known_dialects():
    assert set(known_dialects()) == {"postgresql", "mariadb", "sqlite"}


@pytest.mark.parametrize(
    "tag, expected",
    [
        ("postgresql", PostgresAdapter),
        ("Postgres", PostgresAdapter),
        ("pg", PostgresAdapter),
        ("mariadb", MariaDbAdapter),
        ("mysql", MariaDbAdapter),
        ("sqlite", SqliteAdapter),
        (" sqlite3 ", SqliteAdapter),
    ],
)
def test_adapter_for_tags(tag, expected):
    assert isinstance(adapter_for(tag), expected)


def test_adapter_for_unknown_tag():
    with pytest.raises(UnsupportedConstruct):
        adapter_for("oracle")


def test_adapter_for_object_without_dialect():
    with pytest.raises(TypeError):
        adapter_for(object())


def test_adapters_are_shared():
    assert adapter_for("mysql") is adapter_for("mariadb")


def test_postgres_temporary_table_drops_on_commit():
    ddl = adapter_for("postgresql").temporary_table_ddl(staging_schema("fts_result"))
    assert ddl.upper().startswith("CREATE TEMPORARY TABLE")
    assert "ON COMMIT DROP" in ddl.upper()
    assert "DOUBLE PRECISION" in ddl.upper()
    assert "VARCHAR(254)" in ddl.upper()
    assert adapter_for("postgresql").drop_temporary_table_ddl("fts_result") is None


def test_mariadb_temporary_table_is_dropped_explicitly():
    adapter = adapter_for("mariadb")
    ddl = adapter.temporary_table_ddl(staging_schema("fts_result"))
    assert ddl.upper().startswith("CREATE TEMPORARY TABLE")
    assert "ON COMMIT" not in ddl.upper()
    assert "DOUBLE" in ddl.upper()
    assert adapter.drop_temporary_table_ddl("fts_result") == "DROP TEMPORARY TABLE IF EXISTS fts_result"


def test_sqlite_temporary_table():
    adapter = adapter_for("sqlite")
    ddl = adapter.temporary_table_ddl(staging_schema("fts_result"))
    assert ddl.upper().startswith("CREATE TEMPORARY TABLE")
    assert "REAL" in ddl.upper()
    assert adapter.drop_temporary_table_ddl("fts_result") == "DROP TABLE IF EXISTS temp.fts_result"


def test_row_count_reliability():
    assert adapter_for("postgresql").bulk_insert_reliable_row_count() is True
    assert adapter_for("sqlite").bulk_insert_reliable_row_count() is True
    assert adapter_for("mariadb").bulk_insert_reliable_row_count() is False


@pytest.mark.parametrize(
    "tag, fragment",
    [
        ("postgresql", "USING btree (id)"),
        ("mariadb", "(id) USING BTREE"),
        ("sqlite", "ON fts_result (id)"),
    ],
)
def test_index_ddl_is_idempotent_form(tag, fragment):
    ddl = adapter_for(tag).index_ddl("fts_result", ["id"])
    assert ddl.startswith("CREATE INDEX IF NOT EXISTS fts_result_id_idx")
    assert fragment in ddl


def test_resolve_adapter_from_connection():
    engine = create_engine("sqlite://", poolclass=StaticPool)
    with engine.connect() as conn:
        assert resolve_adapter(conn).name == "sqlite"
        assert resolve_adapter(conn, "sqlite3").name == "sqlite"
        with pytest.raises(DialectMismatchError) as info:
            resolve_adapter(conn, "postgresql")
    assert info.value.expected == "postgresql"
    assert info.value.actual == "sqlite"


def test_unknown_column_kind_is_unsupported():
    with pytest.raises(UnsupportedConstruct):
        adapter_for("sqlite").column_type("blob")
