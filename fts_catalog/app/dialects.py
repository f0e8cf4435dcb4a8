# fts_catalog/app/dialects.py
"""Per-database policy objects.

Each adapter answers the handful of questions on which PostgreSQL, MariaDB and
SQLite disagree: how a temporary table is declared and when it disappears,
whether the driver reports bulk-insert row counts faithfully, how a lookup
index is spelled, which type backs a nullable score column, and how an upsert
that keeps the larger score is written.  Adapters hold no per-query state and
are shared freely between sessions.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import Column, MetaData, String, Table, Text, case, func, literal
from sqlalchemy.dialects.mysql import DOUBLE
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.mysql.mariadb import MariaDBDialect
from sqlalchemy.dialects.postgresql import DOUBLE_PRECISION
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.postgresql.base import PGDialect
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.dialects.sqlite.base import SQLiteDialect
from sqlalchemy.engine import Dialect
from sqlalchemy.schema import CreateTable
from sqlalchemy.sql.elements import ColumnElement, UnaryExpression
from sqlalchemy.types import REAL, TypeEngine

from .errors import DialectMismatchError, UnsupportedConstruct

if TYPE_CHECKING:
    from .query_builder import TableSchema

log = logging.getLogger(__name__)

IDENTIFIER_LENGTH = 254

# Scores are non-negative relevance ranks; a missing score sorts below any real one.
SCORE_FLOOR = -1.0


class DialectAdapter:
    """Base adapter; subclasses override the points where dialects diverge."""

    name = "generic"
    connection_names: Tuple[str, ...] = ()
    supports_nulls_ordering = True
    reliable_bulk_row_count = True

    def __init__(self) -> None:
        self._dialect = self._make_dialect()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    def _make_dialect(self) -> Dialect:
        raise NotImplementedError

    # -- identification -------------------------------------------------

    @property
    def sa_dialect(self) -> Dialect:
        """SQLAlchemy dialect used to render statements to text."""
        return self._dialect

    def matches(self, connection_dialect_name: str) -> bool:
        return connection_dialect_name in self.connection_names

    def quote(self, identifier: str) -> str:
        return self._dialect.identifier_preparer.quote(identifier)

    def unsupported(self, construct: str) -> UnsupportedConstruct:
        return UnsupportedConstruct(self.name, construct)

    # -- type mapping ---------------------------------------------------

    def identifier_type(self) -> TypeEngine:
        return String(IDENTIFIER_LENGTH)

    def score_type(self) -> TypeEngine:
        """Type for nullable 64-bit float columns."""
        raise NotImplementedError

    def text_type(self) -> TypeEngine:
        return Text()

    def column_type(self, kind: str) -> TypeEngine:
        if kind == "identifier":
            return self.identifier_type()
        if kind == "score":
            return self.score_type()
        if kind == "text":
            return self.text_type()
        raise self.unsupported(f"column kind {kind!r}")

    # -- temporary tables -----------------------------------------------

    def temporary_table_options(self) -> Dict[str, Any]:
        return {}

    def temporary_table(self, schema: "TableSchema", metadata: Optional[MetaData] = None) -> Table:
        """Build the SQLAlchemy table object for a temporary staging relation."""
        columns = [
            Column(
                col.name,
                self.column_type(col.kind),
                nullable=col.nullable and not col.primary_key,
                primary_key=col.primary_key,
            )
            for col in schema.columns
        ]
        return Table(
            schema.name,
            metadata if metadata is not None else MetaData(),
            *columns,
            prefixes=["TEMPORARY"],
            **self.temporary_table_options(),
        )

    def temporary_table_ddl(self, schema: "TableSchema") -> str:
        table = self.temporary_table(schema)
        return str(CreateTable(table).compile(dialect=self._dialect)).strip()

    def drop_temporary_table_ddl(self, name: str) -> Optional[str]:
        """Statement run at scope exit, or None when the database drops the table itself."""
        return f"DROP TABLE IF EXISTS {self.quote(name)}"

    # -- bulk insert ----------------------------------------------------

    def bulk_insert_reliable_row_count(self) -> bool:
        return self.reliable_bulk_row_count

    def _insert(self, table: Table):
        raise self.unsupported("merge insert")

    def _incoming(self, stmt) -> Any:
        raise self.unsupported("merge insert")

    def _on_conflict(self, stmt, key: str, assignments: List[Tuple[str, ColumnElement]]):
        raise self.unsupported("merge insert")

    def greatest(self, left: ColumnElement, right: ColumnElement) -> ColumnElement:
        return func.greatest(left, right)

    def merge_insert(
        self,
        table: Table,
        key: str,
        greatest: Sequence[str],
        follow: Optional[Dict[str, str]] = None,
    ):
        """INSERT that resolves key conflicts instead of failing.

        Columns in ``greatest`` keep the larger of the stored and incoming
        value (NULL loses against any number).  Columns in ``follow`` take the
        incoming value only when the incoming row wins on the named score
        column, so a snippet stays paired with the score it belongs to.
        """
        stmt = self._insert(table)
        incoming = self._incoming(stmt)
        assignments: List[Tuple[str, ColumnElement]] = []
        # MySQL applies assignments left to right, so anything that reads the
        # stored score must be assigned before the score itself.
        for column_name, score_name in (follow or {}).items():
            stored_score = table.c[score_name]
            new_score = incoming[score_name]
            stored = table.c[column_name]
            new = incoming[column_name]
            assignments.append(
                (
                    column_name,
                    case(
                        (
                            func.coalesce(new_score, literal(SCORE_FLOOR))
                            > func.coalesce(stored_score, literal(SCORE_FLOOR)),
                            func.coalesce(new, stored),
                        ),
                        else_=func.coalesce(stored, new),
                    ),
                )
            )
        for column_name in greatest:
            stored = table.c[column_name]
            new = incoming[column_name]
            assignments.append(
                (column_name, self.greatest(func.coalesce(stored, new), func.coalesce(new, stored)))
            )
        return self._on_conflict(stmt, key, assignments)

    # -- indexes --------------------------------------------------------

    def index_name(self, table_name: str, columns: Sequence[str]) -> str:
        return f"{table_name}_{'_'.join(columns)}_idx"

    def index_ddl(self, table_name: str, columns: Sequence[str]) -> str:
        raise NotImplementedError

    # -- ordering -------------------------------------------------------

    def order_nulls(self, expr: UnaryExpression, nulls: str) -> UnaryExpression:
        if not self.supports_nulls_ordering:
            raise self.unsupported(f"NULLS {nulls.upper()} ordering")
        if nulls == "first":
            return expr.nulls_first()
        if nulls == "last":
            return expr.nulls_last()
        raise ValueError(f"nulls must be 'first' or 'last', not {nulls!r}")


class PostgresAdapter(DialectAdapter):
    """Strict dialect: transactional DDL, exact row counts, ON COMMIT DROP."""

    name = "postgresql"
    connection_names = ("postgresql",)

    def _make_dialect(self) -> Dialect:
        return PGDialect(paramstyle="format")

    def score_type(self) -> TypeEngine:
        return DOUBLE_PRECISION()

    def temporary_table_options(self) -> Dict[str, Any]:
        return {"postgresql_on_commit": "DROP"}

    def drop_temporary_table_ddl(self, name: str) -> Optional[str]:
        return None

    def _insert(self, table: Table):
        return pg_insert(table)

    def _incoming(self, stmt) -> Any:
        return stmt.excluded

    def _on_conflict(self, stmt, key, assignments):
        return stmt.on_conflict_do_update(index_elements=[key], set_=dict(assignments))

    def index_ddl(self, table_name: str, columns: Sequence[str]) -> str:
        cols = ", ".join(self.quote(c) for c in columns)
        return (
            f"CREATE INDEX IF NOT EXISTS {self.quote(self.index_name(table_name, columns))} "
            f"ON {self.quote(table_name)} USING btree ({cols})"
        )


class MariaDbAdapter(DialectAdapter):
    """MariaDB / MySQL.

    Temporary tables live as long as the connection, not the transaction, so
    they are dropped explicitly.  ``ON DUPLICATE KEY UPDATE`` reports two
    affected rows per updated row, which makes bulk row counts meaningless.
    """

    name = "mariadb"
    connection_names = ("mariadb", "mysql")
    supports_nulls_ordering = False
    reliable_bulk_row_count = False

    def _make_dialect(self) -> Dialect:
        return MariaDBDialect(paramstyle="format")

    def score_type(self) -> TypeEngine:
        return DOUBLE(asdecimal=False)

    def drop_temporary_table_ddl(self, name: str) -> Optional[str]:
        return f"DROP TEMPORARY TABLE IF EXISTS {self.quote(name)}"

    def _insert(self, table: Table):
        return mysql_insert(table)

    def _incoming(self, stmt) -> Any:
        return stmt.inserted

    def _on_conflict(self, stmt, key, assignments):
        # key conflicts are implied by the primary key
        return stmt.on_duplicate_key_update(assignments)

    def index_ddl(self, table_name: str, columns: Sequence[str]) -> str:
        cols = ", ".join(self.quote(c) for c in columns)
        return (
            f"CREATE INDEX IF NOT EXISTS {self.quote(self.index_name(table_name, columns))} "
            f"ON {self.quote(table_name)} ({cols}) USING BTREE"
        )


class SqliteAdapter(DialectAdapter):
    """Embedded dialect used by the test-suite and small deployments."""

    name = "sqlite"
    connection_names = ("sqlite",)

    def _make_dialect(self) -> Dialect:
        return SQLiteDialect(paramstyle="qmark")

    def score_type(self) -> TypeEngine:
        return REAL()

    def drop_temporary_table_ddl(self, name: str) -> Optional[str]:
        return f"DROP TABLE IF EXISTS temp.{self.quote(name)}"

    def greatest(self, left, right):
        # multi-argument max() is SQLite's scalar GREATEST
        return func.max(left, right)

    def _insert(self, table: Table):
        return sqlite_insert(table)

    def _incoming(self, stmt) -> Any:
        return stmt.excluded

    def _on_conflict(self, stmt, key, assignments):
        return stmt.on_conflict_do_update(index_elements=[key], set_=dict(assignments))

    def index_ddl(self, table_name: str, columns: Sequence[str]) -> str:
        cols = ", ".join(self.quote(c) for c in columns)
        return (
            f"CREATE INDEX IF NOT EXISTS {self.quote(self.index_name(table_name, columns))} "
            f"ON {self.quote(table_name)} ({cols})"
        )


ADAPTERS: Dict[str, DialectAdapter] = {
    adapter.name: adapter for adapter in (PostgresAdapter(), MariaDbAdapter(), SqliteAdapter())
}

_ALIASES = {
    "postgres": "postgresql",
    "pg": "postgresql",
    "mysql": "mariadb",
    "maria": "mariadb",
    "sqlite3": "sqlite",
}

DialectLike = Union[str, DialectAdapter, Any]


def _connection_dialect_name(target: Any) -> Optional[str]:
    dialect = getattr(target, "dialect", None)
    if dialect is None and hasattr(target, "get_bind"):
        dialect = getattr(target.get_bind(), "dialect", None)
    return getattr(dialect, "name", None)


def adapter_for(target: DialectLike) -> DialectAdapter:
    """Return the adapter for a dialect tag, an adapter, or anything with a ``.dialect``."""
    if isinstance(target, DialectAdapter):
        return target
    if isinstance(target, str):
        tag = target.strip().lower()
        tag = _ALIASES.get(tag, tag)
        adapter = ADAPTERS.get(tag)
        if adapter is None:
            raise UnsupportedConstruct(tag, "dialect")
        return adapter
    dialect_name = _connection_dialect_name(target)
    if dialect_name is None:
        raise TypeError(f"Cannot determine a dialect from {target!r}")
    for adapter in ADAPTERS.values():
        if adapter.matches(dialect_name):
            return adapter
    raise UnsupportedConstruct(dialect_name, "dialect")


def resolve_adapter(connection: Any, expected: Optional[str] = None) -> DialectAdapter:
    """Pick the adapter for a live connection, checking it against the configured dialect."""
    actual = adapter_for(connection)
    if expected is None:
        return actual
    configured = adapter_for(expected)
    if configured is not actual:
        log.error("Dialect misconfiguration: configured=%s connection=%s", configured.name, actual.name)
        raise DialectMismatchError(configured.name, actual.name)
    return configured


def known_dialects() -> Iterable[str]:
    return tuple(ADAPTERS)
