from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from fts_catalog.app import db
from fts_catalog.app.catalog import create_catalog_schema, insert_items, insert_tenant
from fts_catalog.app.fts_result import AttachmentData, ItemMatch, SearchResultBatch

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Point the config loader at an empty file so a local appconfig.json cannot leak in."""
    cfg = tmp_path / "appconfig.json"
    cfg.write_text("{}", encoding="utf-8")
    monkeypatch.setenv("FTS_CATALOG_CONFIG", str(cfg))
    return cfg


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    create_catalog_schema(eng)
    db.set_engine(eng)
    yield eng
    db.dispose_engine()


def item_row(n: int, tenant_id: str = TENANT, **extra) -> dict:
    row = {
        "id": f"item-{n}",
        "tenant_id": tenant_id,
        "name": f"item {n}",
        "source": "test",
        "created": BASE_TIME + timedelta(minutes=n),
    }
    row.update(extra)
    return row


def seed(engine, rows: List[dict], tenants=(TENANT, OTHER_TENANT)) -> None:
    with engine.begin() as conn:
        for tenant_id in tenants:
            insert_tenant(conn, tenant_id, created=BASE_TIME)
        insert_items(conn, rows)


@pytest.fixture
def catalog(engine):
    """Ten items for TENANT, three for OTHER_TENANT (item-100..102)."""
    rows = [item_row(n) for n in range(10)]
    rows += [item_row(n, OTHER_TENANT) for n in range(100, 103)]
    seed(engine, rows)
    return engine


def make_batch(
    scores: dict,
    tenant_id: str = TENANT,
    *,
    attachment: bool = False,
    prefix: str = "m",
    snippets: Optional[dict] = None,
) -> SearchResultBatch:
    """Build a batch from ``{item_id: score}``; every match gets one snippet unless overridden."""
    matches = []
    highlights = {}
    for idx, (item_id, score) in enumerate(scores.items()):
        match_id = f"{prefix}{idx}-{item_id}"
        target = AttachmentData(f"{item_id}-att", "notes.pdf") if attachment else None
        if target is None:
            matches.append(ItemMatch(match_id, item_id, tenant_id, score))
        else:
            matches.append(ItemMatch(match_id, item_id, tenant_id, score, target))
        if snippets is None:
            highlights[match_id] = (f"snippet for {item_id} at {score}",)
        elif item_id in snippets:
            highlights[match_id] = tuple(snippets[item_id])
    return SearchResultBatch(count=len(matches), highlights=highlights, matches=tuple(matches))


def stream(*batches: SearchResultBatch) -> Iterator[SearchResultBatch]:
    for batch in batches:
        yield batch
