# fts_catalog/services/temp_table.py
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import Table, inspect
from sqlalchemy.exc import DBAPIError

from fts_catalog.app.catalog import CATALOG_METADATA
from fts_catalog.app.db import StagingSession
from fts_catalog.app.dialects import SCORE_FLOOR
from fts_catalog.app.errors import StagingInsertError, TableCreationError
from fts_catalog.app.query_builder import (
    ColumnDef,
    TableSchema,
    asc,
    create_index,
    create_table as create_table_stmt,
    insert_all,
    select,
)

log = logging.getLogger(__name__)

STAGING_COLUMNS: Tuple[ColumnDef, ...] = (
    ColumnDef("id", "identifier", nullable=False, primary_key=True),
    ColumnDef("score", "score"),
    ColumnDef("secondary_score", "score"),
    ColumnDef("context", "text"),
)

SCORE_COLUMNS = ("score", "secondary_score")
# context travels with whichever row wins on the primary score
FOLLOW_COLUMNS = {"context": "score"}


def staging_schema(name: str) -> TableSchema:
    return TableSchema(name, STAGING_COLUMNS)


@dataclass(frozen=True)
class StagingRow:
    id: str
    score: Optional[float] = None
    secondary_score: Optional[float] = None
    context: Optional[str] = None

    def as_params(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def snippets(self) -> List[str]:
        return list(decode_context(self.context).get("snippets") or [])


def encode_context(snippets: Sequence[str], name: Optional[str] = None) -> Optional[str]:
    """Serialize highlight snippets for the ``context`` column; None when there is nothing to keep."""
    if not snippets:
        return None
    return json.dumps({"name": name, "snippets": list(snippets)}, ensure_ascii=False)


def decode_context(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        log.warning("Ignoring malformed staging context %r", raw[:80])
        return {}
    return data if isinstance(data, dict) else {}


def _greater(left: Optional[float], right: Optional[float]) -> Optional[float]:
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)


def merge_rows(existing: Optional[StagingRow], incoming: StagingRow) -> StagingRow:
    """Combine two rows for the same id the way the table's merge insert does."""
    if existing is None:
        return incoming
    incoming_wins = (incoming.score if incoming.score is not None else SCORE_FLOOR) > (
        existing.score if existing.score is not None else SCORE_FLOOR
    )
    if incoming_wins:
        context = incoming.context or existing.context
    else:
        context = existing.context or incoming.context
    return StagingRow(
        id=existing.id,
        score=_greater(existing.score, incoming.score),
        secondary_score=_greater(existing.secondary_score, incoming.secondary_score),
        context=context,
    )


class TempTable:
    """Handle to a staging table living in one :class:`StagingSession`.

    The handle doubles as a relation for the query builder (``select(t.all)
    .from_(t)``) and exposes its columns as attributes (``t.id``, ``t.score``).
    """

    def __init__(self, session: StagingSession, schema: TableSchema, table: Table):
        self.session = session
        self.schema = schema
        self.table = table
        self.indexed = False
        self.sealed = False
        self.stats: Any = None

    def __repr__(self) -> str:
        return f"<TempTable {self.name} dialect={self.session.dialect_name} indexed={self.indexed} sealed={self.sealed}>"

    def __clause_element__(self) -> Table:
        return self.table

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def id(self):
        return self.table.c.id

    @property
    def score(self):
        return self.table.c.score

    @property
    def secondary_score(self):
        return self.table.c.secondary_score

    @property
    def context(self):
        return self.table.c.context

    @property
    def all(self) -> tuple:
        return tuple(self.table.c)

    def insert_all(self, rows: Iterable[StagingRow]) -> int:
        """Merge-insert rows, keeping the larger score per id.

        Returns the count reported by the driver.  It is only exact when
        ``session.adapter.bulk_insert_reliable_row_count()`` is true; do not
        assert on it otherwise.
        """
        if self.sealed:
            raise StagingInsertError(self.name, f"{self.name!r} is read-only once staging has finished")
        params = [row.as_params() for row in rows]
        if not params:
            return 0
        stmt = insert_all(self.table, (), merge="max", greatest=SCORE_COLUMNS, follow=FOLLOW_COLUMNS)
        try:
            result = self.session.execute(stmt.statement(self.session.adapter), params)
        except DBAPIError as exc:
            log.warning("Bulk insert into %s failed after %d rows were submitted", self.name, len(params), exc_info=True)
            raise StagingInsertError(self.name, f"Insert into {self.name!r} failed: {exc.orig}") from exc
        reported = result.rowcount
        log.debug("Inserted %d rows into %s (driver reported %s)", len(params), self.name, reported)
        return reported

    def create_index(self) -> None:
        """Build the lookup index on ``id``. Repeated calls are no-ops."""
        if self.indexed:
            log.debug("Index on %s already present", self.name)
            return
        ddl = create_index(self.table, [self.id]).render(self.session.adapter).sql
        try:
            self.session.execute_ddl(ddl)
        except DBAPIError as exc:
            log.warning("Index creation on %s failed", self.name, exc_info=True)
            raise TableCreationError(self.name, f"Index on {self.name!r} rejected: {exc.orig}") from exc
        self.indexed = True

    def seal(self, stats: Any = None) -> None:
        """Mark the table read-only for the rest of its scope."""
        self.sealed = True
        self.stats = stats

    def rows(self) -> List[StagingRow]:
        """Every staged row ordered by id."""
        stmt = select(self.all).from_(self).order_by(asc(self.id)).build(self.session.adapter)
        result = self.session.execute(stmt)
        return [
            StagingRow(id=r.id, score=r.score, secondary_score=r.secondary_score, context=r.context)
            for r in result
        ]

    def count(self) -> int:
        stmt = select(self.id).from_(self).count(self.session.adapter)
        return int(self.session.execute(stmt).scalar() or 0)


def _relation_exists(session: StagingSession, name: str) -> bool:
    # a temp table would shadow a permanent one on SQLite and PostgreSQL
    if name.lower() in (t.lower() for t in CATALOG_METADATA.tables):
        return True
    try:
        return inspect(session.connection).has_table(name)
    except DBAPIError as exc:
        raise TableCreationError(name, f"Unable to check for an existing {name!r}: {exc.orig}") from exc


def create_table(session: StagingSession, name: str) -> TempTable:
    """Create an empty staging table called ``name`` inside ``session``."""
    schema = staging_schema(name)
    if session.has_temp_table(name):
        raise TableCreationError(name, f"A temporary table named {name!r} already exists in this session")
    if _relation_exists(session, name):
        raise TableCreationError(name, f"{name!r} collides with an existing table; pick another staging name")
    ddl = create_table_stmt(schema).render(session.adapter).sql
    try:
        session.execute_ddl(ddl)
    except DBAPIError as exc:
        log.warning("Creating temporary table %s failed on %s", name, session.dialect_name, exc_info=True)
        raise TableCreationError(name, f"Unable to create temporary table {name!r}: {exc.orig}") from exc
    session.register_temp_table(name)
    log.debug("Created temporary table %s (%s)", name, session.dialect_name)
    return TempTable(session, schema, session.adapter.temporary_table(schema))
