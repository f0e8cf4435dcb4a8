# fts_catalog/app/catalog.py
"""The slice of the item catalog the join engine reads.

Only the columns the query layer needs are declared here; the full catalog
schema and its business rules live with the application that owns them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine

from .dialects import IDENTIFIER_LENGTH

log = logging.getLogger(__name__)

CATALOG_METADATA = MetaData()

tenants = Table(
    "tenants",
    CATALOG_METADATA,
    Column("id", String(IDENTIFIER_LENGTH), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("state", String(32), nullable=False, default="active"),
    Column("created", DateTime(timezone=True), nullable=False),
)

items = Table(
    "items",
    CATALOG_METADATA,
    Column("id", String(IDENTIFIER_LENGTH), primary_key=True),
    Column("tenant_id", String(IDENTIFIER_LENGTH), ForeignKey("tenants.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("source", String(255), nullable=False, default=""),
    Column("state", String(32), nullable=False, default="created"),
    Column("item_date", DateTime(timezone=True), nullable=True),
    Column("due_date", DateTime(timezone=True), nullable=True),
    Column("notes", Text, nullable=True),
    Column("created", DateTime(timezone=True), nullable=False),
    Column("updated", DateTime(timezone=True), nullable=False),
    Column("is_deleted", Boolean, nullable=False, default=False),
)

# Columns copied into every ResultRow.
ITEM_COLUMNS = (
    items.c.id,
    items.c.tenant_id,
    items.c.name,
    items.c.source,
    items.c.state,
    items.c.item_date,
    items.c.due_date,
    items.c.created,
)


def item_date_expr():
    """Date used for range filters and recency ordering: the item date, else creation time."""
    return func.coalesce(items.c.item_date, items.c.created)


def create_catalog_schema(engine: Engine) -> None:
    CATALOG_METADATA.create_all(engine)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def insert_tenant(session: Any, tenant_id: str, name: Optional[str] = None, *, created: Optional[datetime] = None) -> None:
    session.execute(
        insert(tenants).values(
            id=tenant_id,
            name=name or tenant_id,
            state="active",
            created=created or _now(),
        )
    )


def insert_items(session: Any, rows: Iterable[Mapping[str, Any]]) -> int:
    """Insert catalog rows, filling timestamps and defaults that were left out."""
    prepared: List[Dict[str, Any]] = []
    for row in rows:
        row_dict = dict(row)
        if "id" not in row_dict or "tenant_id" not in row_dict:
            raise ValueError("catalog rows need both 'id' and 'tenant_id'")
        created = row_dict.get("created") or _now()
        row_dict.setdefault("name", row_dict["id"])
        row_dict.setdefault("source", "")
        row_dict.setdefault("state", "created")
        row_dict.setdefault("item_date", None)
        row_dict.setdefault("due_date", None)
        row_dict.setdefault("notes", None)
        row_dict["created"] = created
        row_dict.setdefault("updated", created)
        row_dict.setdefault("is_deleted", False)
        prepared.append(row_dict)
    if not prepared:
        return 0
    session.execute(insert(items), prepared)
    log.debug("Inserted %d catalog items", len(prepared))
    return len(prepared)


def count_tenant_items(session: Any, tenant_id: str) -> int:
    stmt = select(func.count()).select_from(items).where(items.c.tenant_id == tenant_id)
    return int(session.execute(stmt).scalar() or 0)
