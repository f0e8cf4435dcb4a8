# fts_catalog/app/query_builder.py
"""Small statement builder on top of SQLAlchemy Core.

Statements are plain immutable values (``Select``, ``InsertAll``,
``CreateTable``, ``CreateIndex``) that know nothing about the target database.
``build(dialect)`` turns one into an executable SQLAlchemy construct and
``render(dialect)`` into SQL text plus a positional parameter list.  Values are
always bound parameters; they never end up inside the SQL text.

Example::

    stmt = (
        select(items.c.id, staged.score)
        .from_(items)
        .join(staged, items.c.id == staged.id)
        .where(items.c.tenant_id == "acme")
        .order_by(desc(staged.score), asc(items.c.id))
        .limit(10)
    )
    sql, params = stmt.render("mariadb")
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.expression import Executable

from .dialects import DialectAdapter, DialectLike, adapter_for


# predicate helpers re-exported so callers only import this module
and_ = sa.and_
or_ = sa.or_
not_ = sa.not_
coalesce = sa.func.coalesce
literal = sa.literal

_COLUMN_KINDS = ("identifier", "score", "text")


@dataclass(frozen=True)
class Rendered:
    sql: str
    params: List[Any]

    def __iter__(self):
        # allows ``sql, params = stmt.render(...)``
        return iter((self.sql, self.params))


@dataclass(frozen=True)
class Batch:
    """An offset/limit window over a result set. ``limit=None`` means unbounded."""

    offset: int = 0
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("offset must not be negative")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must not be negative")

    @classmethod
    def first(cls, limit: int) -> "Batch":
        return cls(0, limit)

    @classmethod
    def all(cls) -> "Batch":
        return cls(0, None)

    def next(self) -> "Batch":
        if self.limit is None:
            return self
        return Batch(self.offset + self.limit, self.limit)

    def shifted(self, extra_offset: int) -> "Batch":
        return Batch(self.offset + max(0, extra_offset), self.limit)


# -- schema nodes -----------------------------------------------------------


@dataclass(frozen=True)
class ColumnDef:
    name: str
    kind: str
    nullable: bool = True
    primary_key: bool = False

    def __post_init__(self) -> None:
        if self.kind not in _COLUMN_KINDS:
            raise ValueError(f"Unknown column kind {self.kind!r}")
        if not self.name.isidentifier():
            raise ValueError(f"Invalid column name {self.name!r}")


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: Tuple[ColumnDef, ...]

    def __post_init__(self) -> None:
        if not self.name.isidentifier():
            raise ValueError(f"Invalid table name {self.name!r}")
        if not self.columns:
            raise ValueError("A table needs at least one column")

    @property
    def primary_key(self) -> Optional[str]:
        for col in self.columns:
            if col.primary_key:
                return col.name
        return None

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(col.name for col in self.columns)


# -- helpers ----------------------------------------------------------------


def _relation(value: Any) -> Any:
    """Accept SQLAlchemy selectables or handles exposing ``__clause_element__``."""
    if hasattr(value, "__clause_element__"):
        return value.__clause_element__()
    return value


def _compile(statement: Any, adapter: DialectAdapter) -> Rendered:
    compiled = statement.compile(
        dialect=adapter.sa_dialect,
        compile_kwargs={"render_postcompile": True},
    )
    params = compiled.params
    names = compiled.positiontup or []
    return Rendered(str(compiled).strip(), [params[name] for name in names])


# -- SELECT -----------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Ordering:
    column: ColumnElement
    descending: bool = False
    nulls: Optional[str] = None

    def build(self, adapter: DialectAdapter):
        expr = self.column.desc() if self.descending else self.column.asc()
        if self.nulls is not None:
            expr = adapter.order_nulls(expr, self.nulls)
        return expr


def asc(column: ColumnElement, nulls: Optional[str] = None) -> Ordering:
    return Ordering(column, False, nulls)


def desc(column: ColumnElement, nulls: Optional[str] = None) -> Ordering:
    return Ordering(column, True, nulls)


@dataclass(frozen=True, eq=False)
class Join:
    relation: Any
    on: ColumnElement
    outer: bool = False


@dataclass(frozen=True, eq=False)
class Select:
    columns: Tuple[Any, ...]
    relation: Any = None
    joins: Tuple[Join, ...] = ()
    predicates: Tuple[ColumnElement, ...] = ()
    orderings: Tuple[Ordering, ...] = ()
    limit_value: Optional[int] = None
    offset_value: int = 0

    def from_(self, relation: Any) -> "Select":
        return replace(self, relation=_relation(relation))

    def join(self, relation: Any, on: ColumnElement) -> "Select":
        return replace(self, joins=self.joins + (Join(_relation(relation), on),))

    def left_join(self, relation: Any, on: ColumnElement) -> "Select":
        return replace(self, joins=self.joins + (Join(_relation(relation), on, outer=True),))

    def where(self, *predicates: Optional[ColumnElement]) -> "Select":
        """Add predicates; all of them are AND-combined. ``None`` entries are skipped."""
        kept = tuple(p for p in predicates if p is not None)
        return replace(self, predicates=self.predicates + kept)

    def order_by(self, *orderings: Any) -> "Select":
        normalized = tuple(o if isinstance(o, Ordering) else asc(o) for o in orderings)
        return replace(self, orderings=self.orderings + normalized)

    def limit(self, n: Optional[int]) -> "Select":
        return replace(self, limit_value=n)

    def offset(self, n: int) -> "Select":
        return replace(self, offset_value=n)

    def with_batch(self, batch: Batch) -> "Select":
        return replace(self, limit_value=batch.limit, offset_value=batch.offset)

    def _from_clause(self):
        clause = self.relation
        for join in self.joins:
            clause = clause.join(join.relation, join.on, isouter=join.outer)
        return clause

    def build(self, dialect: DialectLike) -> sa.Select:
        adapter = adapter_for(dialect)
        stmt = sa.select(*self.columns)
        if self.relation is not None:
            stmt = stmt.select_from(self._from_clause())
        elif self.joins:
            raise ValueError("join() requires from_() first")
        for predicate in self.predicates:
            stmt = stmt.where(predicate)
        if self.orderings:
            stmt = stmt.order_by(*(o.build(adapter) for o in self.orderings))
        if self.limit_value is not None:
            stmt = stmt.limit(self.limit_value)
        if self.offset_value:
            stmt = stmt.offset(self.offset_value)
        return stmt

    def count(self, dialect: DialectLike) -> sa.Select:
        """``SELECT count(*)`` over this query without ordering or paging."""
        inner = replace(self, orderings=(), limit_value=None, offset_value=0).build(dialect)
        return sa.select(sa.func.count()).select_from(inner.subquery())

    def render(self, dialect: DialectLike) -> Rendered:
        adapter = adapter_for(dialect)
        return _compile(self.build(adapter), adapter)


def select(*columns: Any) -> Select:
    flattened: List[Any] = []
    for column in columns:
        if isinstance(column, (list, tuple)):
            flattened.extend(column)
        else:
            flattened.append(column)
    return Select(tuple(flattened))


# -- INSERT -----------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class InsertAll:
    table: sa.Table
    rows: Tuple[Mapping[str, Any], ...]
    merge: Optional[str] = None
    key: Optional[str] = None
    greatest: Tuple[str, ...] = ()
    follow: Dict[str, str] = field(default_factory=dict)

    def statement(self, dialect: DialectLike) -> Executable:
        """Statement without values, for ``connection.execute(stmt, rows)`` executemany."""
        adapter = adapter_for(dialect)
        if self.merge is None:
            return sa.insert(self.table)
        if self.merge != "max":
            raise adapter.unsupported(f"merge strategy {self.merge!r}")
        key = self.key or _primary_key_name(self.table)
        return adapter.merge_insert(self.table, key, self.greatest, self.follow)

    def build(self, dialect: DialectLike) -> Executable:
        """Single multi-row INSERT statement carrying every row as bound values."""
        if not self.rows:
            raise ValueError("insert_all() needs at least one row to build a statement")
        return self.statement(dialect).values([dict(r) for r in self.rows])

    def render(self, dialect: DialectLike) -> Rendered:
        adapter = adapter_for(dialect)
        return _compile(self.build(adapter), adapter)


def _primary_key_name(table: sa.Table) -> str:
    keys = [c.name for c in table.primary_key.columns]
    if len(keys) != 1:
        raise ValueError(f"merge insert into {table.name!r} needs exactly one primary key column")
    return keys[0]


def insert_all(
    table: Any,
    rows: Iterable[Mapping[str, Any]],
    *,
    merge: Optional[str] = None,
    greatest: Sequence[str] = (),
    follow: Optional[Dict[str, str]] = None,
) -> InsertAll:
    """Bulk insert. ``merge="max"`` asks for an upsert that keeps the larger value of ``greatest`` columns."""
    return InsertAll(
        table=_relation(table),
        rows=tuple(rows),
        merge=merge,
        greatest=tuple(greatest),
        follow=dict(follow or {}),
    )


# -- DDL --------------------------------------------------------------------


@dataclass(frozen=True)
class CreateTable:
    schema: TableSchema
    temporary: bool = True

    def render(self, dialect: DialectLike) -> Rendered:
        adapter = adapter_for(dialect)
        if not self.temporary:
            raise adapter.unsupported("persistent CREATE TABLE")
        return Rendered(adapter.temporary_table_ddl(self.schema), [])


@dataclass(frozen=True)
class CreateIndex:
    table_name: str
    columns: Tuple[str, ...]

    def render(self, dialect: DialectLike) -> Rendered:
        adapter = adapter_for(dialect)
        return Rendered(adapter.index_ddl(self.table_name, self.columns), [])


def create_table(schema: TableSchema) -> CreateTable:
    return CreateTable(schema)


def create_index(table: Any, columns: Sequence[Any]) -> CreateIndex:
    table_name = table if isinstance(table, str) else _relation(table).name
    names = tuple(c if isinstance(c, str) else c.name for c in columns)
    if not names:
        raise ValueError("create_index() needs at least one column")
    return CreateIndex(table_name, names)


def render(statement: Any, dialect: DialectLike) -> Rendered:
    """Render any builder statement, or a raw SQLAlchemy construct, for ``dialect``."""
    if hasattr(statement, "render"):
        return statement.render(dialect)
    adapter = adapter_for(dialect)
    return _compile(statement, adapter)
