# fts_catalog/services/item_query.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple, Union

from sqlalchemy.engine import Result, Row
from sqlalchemy.sql.elements import ColumnElement

from fts_catalog.app.catalog import ITEM_COLUMNS, item_date_expr, items
from fts_catalog.app.config_loader import get_default_batch_limit
from fts_catalog.app.db import StagingSession
from fts_catalog.app.dialects import SCORE_FLOOR
from fts_catalog.app.fts_result import SearchResultBatch
from fts_catalog.app.query_builder import Batch, Select, asc, coalesce, desc, literal, select

from .search_stager import prepare_table
from .temp_table import TempTable, decode_context

log = logging.getLogger(__name__)

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class QuerySpec:
    """What the caller wants from the catalog; built once per request and never mutated."""

    tenant_id: str
    date_range: Optional[Tuple[Optional[DateLike], Optional[DateLike]]] = None
    filter_expression: Optional[ColumnElement] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise ValueError("QuerySpec requires a tenant_id")


@dataclass(frozen=True)
class MatchContext:
    score: Optional[float]
    secondary_score: Optional[float] = None
    snippets: Tuple[str, ...] = ()
    attachment_name: Optional[str] = None


@dataclass(frozen=True)
class ResultRow:
    id: str
    tenant_id: str
    name: str
    source: str
    state: str
    item_date: Optional[datetime]
    due_date: Optional[datetime]
    created: datetime
    context: Optional[MatchContext] = None

    @property
    def date(self) -> datetime:
        return self.item_date or self.created


def _context_from_row(row: Row) -> MatchContext:
    decoded = decode_context(row.context)
    return MatchContext(
        score=row.score,
        secondary_score=row.secondary_score,
        snippets=tuple(decoded.get("snippets") or ()),
        attachment_name=decoded.get("name"),
    )


def _to_result_row(row: Row, with_context: bool) -> ResultRow:
    return ResultRow(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        source=row.source,
        state=row.state,
        item_date=row.item_date,
        due_date=row.due_date,
        created=row.created,
        context=_context_from_row(row) if with_context else None,
    )


class ItemCursor:
    """Lazy iterator over :class:`ResultRow` that owns the underlying DB cursor.

    The cursor is released when the rows run out, on :meth:`close`, or when a
    ``with`` block exits for any reason::

        with query_items(session, spec, today, 0, Batch.first(20), staged) as rows:
            for row in rows:
                if done(row):
                    break
    """

    def __init__(self, result: Result, with_context: bool, session: Optional[StagingSession] = None):
        self._result = result
        self._session = session
        self._with_context = with_context
        self._closed = False

    def __iter__(self) -> "ItemCursor":
        return self

    def __next__(self) -> ResultRow:
        if self._closed:
            raise StopIteration
        try:
            row = next(self._result)
        except Exception:
            # StopIteration included: the cursor is released once rows run out
            self.close()
            raise
        return _to_result_row(row, self._with_context)

    def __enter__(self) -> "ItemCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            if self._session is not None:
                self._session.release_result(self._result)
            else:
                self._result.close()


def _day_start(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _day_end_exclusive(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value + timedelta(microseconds=1)
    return datetime.combine(value + timedelta(days=1), time.min)


def _base_query(spec: QuerySpec, as_of: DateLike) -> Select:
    stmt = select(ITEM_COLUMNS).from_(items).where(
        items.c.tenant_id == spec.tenant_id,
        items.c.is_deleted.is_(False),
        items.c.created < _day_end_exclusive(as_of),
    )
    if spec.date_range is not None:
        date_from, date_to = spec.date_range
        if date_from is not None:
            stmt = stmt.where(item_date_expr() >= _day_start(date_from))
        if date_to is not None:
            stmt = stmt.where(item_date_expr() < _day_end_exclusive(date_to))
    if spec.filter_expression is not None:
        stmt = stmt.where(spec.filter_expression)
    return stmt


def build_item_query(
    spec: QuerySpec,
    as_of: DateLike,
    offset: int,
    batch: Batch,
    staged: Optional[TempTable] = None,
) -> Select:
    """Compose the catalog query; dialect-independent until ``build``/``render``."""
    stmt = _base_query(spec, as_of)
    if staged is not None:
        stmt = (
            select(stmt.columns + (staged.score, staged.secondary_score, staged.context))
            .from_(stmt.relation)
            .join(staged, items.c.id == staged.id)
            .where(*stmt.predicates)
            .order_by(
                desc(coalesce(staged.score, literal(SCORE_FLOOR))),
                desc(item_date_expr()),
                asc(items.c.id),
            )
        )
    else:
        stmt = stmt.order_by(desc(item_date_expr()), asc(items.c.id))
    return stmt.with_batch(batch.shifted(offset))


def query_items(
    session: StagingSession,
    spec: QuerySpec,
    as_of: DateLike,
    offset: int,
    batch: Batch,
    staged: Optional[TempTable] = None,
) -> ItemCursor:
    """Run the catalog query, joined with ``staged`` when given, and return a lazy cursor.

    ``offset`` is added to ``batch.offset``; at most ``batch.limit`` rows come
    back.  Ordering is score (when staged), then item date, then id, so two
    calls with the same inputs page identically.
    """
    if staged is not None and staged.session is not session:
        raise ValueError("staged table belongs to a different session")
    query = build_item_query(spec, as_of, offset, batch, staged)
    stmt = query.build(session.adapter)
    if log.isEnabledFor(logging.DEBUG):
        log.debug("Item query (%s): %s", session.dialect_name, query.render(session.adapter).sql)
    result = session.execute(stmt.execution_options(stream_results=True))
    session.track_result(result)
    return ItemCursor(result, with_context=staged is not None, session=session)


def count_items(
    session: StagingSession,
    spec: QuerySpec,
    as_of: DateLike,
    staged: Optional[TempTable] = None,
) -> int:
    """Number of rows :func:`query_items` could return across all pages."""
    query = build_item_query(spec, as_of, 0, Batch.all(), staged)
    return int(session.execute(query.count(session.adapter)).scalar() or 0)


def search_items(
    session: StagingSession,
    spec: QuerySpec,
    batches: Iterable[SearchResultBatch],
    *,
    as_of: DateLike,
    batch: Optional[Batch] = None,
    offset: int = 0,
    table_name: Optional[str] = None,
    chunk_size: Optional[int] = None,
) -> List[ResultRow]:
    """Stage ``batches`` and return one page of joined results.

    Without ``batch`` the first page of ``default_batch_limit`` rows is returned.
    """
    if batch is None:
        batch = Batch.first(get_default_batch_limit())
    staged = prepare_table(session, batches, table_name, chunk_size=chunk_size)
    with query_items(session, spec, as_of, offset, batch, staged) as cursor:
        return list(cursor)
