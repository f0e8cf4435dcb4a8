# fts_catalog/tools/staging_benchmark.py
# Stage a synthetic search result stream and time the catalog join.
# Uses DATABASE_URL (via .env) unless --url is given; "sqlite://" runs fully in memory.

from __future__ import annotations

import argparse
import logging
import random
import time
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional, Sequence

from sqlalchemy.engine import Engine

from fts_catalog.app import logging_setup
from fts_catalog.app.catalog import create_catalog_schema, insert_items, insert_tenant
from fts_catalog.app.db import create_engine_for, get_engine, session_scope, set_engine, staging_session
from fts_catalog.app.fts_result import AttachmentData, ItemMatch, SearchResultBatch
from fts_catalog.app.query_builder import Batch
from fts_catalog.services.item_query import QuerySpec, count_items, query_items
from fts_catalog.services.search_stager import prepare_table

log = logging.getLogger(__name__)

DEFAULT_TENANT = "bench"


def fake_batch(tenant_id: str, start: int, end: int, rng: random.Random) -> SearchResultBatch:
    """Every item in [start, end) matches twice: once in its text, once in an attachment."""
    matches = []
    highlights = {}
    for n in range(start, end):
        item_id = f"item-{n}"
        matches.append(ItemMatch(f"m{n}", item_id, tenant_id, rng.random()))
        matches.append(
            ItemMatch(
                f"m{n}-1",
                item_id,
                tenant_id,
                rng.random(),
                AttachmentData(f"{item_id}-attach-1", "attachment.pdf"),
            )
        )
        highlights[f"m{n}"] = ("only **items** here",)
        highlights[f"m{n}-1"] = ("this *a test* please",)
    return SearchResultBatch(count=end, highlights=highlights, matches=tuple(matches))


def fake_results(tenant_id: str, total: int, chunk: int, seed: int = 0) -> Iterator[SearchResultBatch]:
    rng = random.Random(seed)
    for start in range(0, total, chunk):
        yield fake_batch(tenant_id, start, min(start + chunk, total), rng)


def seed_catalog(engine: Engine, tenant_id: str, item_count: int) -> None:
    create_catalog_schema(engine)
    base = datetime(2020, 1, 1, tzinfo=timezone.utc)
    with session_scope() as session:
        insert_tenant(session, tenant_id, created=base)
        insert_items(
            session,
            (
                {
                    "id": f"item-{n}",
                    "tenant_id": tenant_id,
                    "name": f"item {n}",
                    "source": "benchmark",
                    "created": base + timedelta(minutes=n),
                }
                for n in range(item_count)
            ),
        )
        session.commit()
    log.info("Seeded %d items for tenant %s", item_count, tenant_id)


def run(engine: Engine, *, matches: int, chunk: int, items: int, limit: int, seed_data: bool) -> int:
    if seed_data:
        seed_catalog(engine, DEFAULT_TENANT, items)

    spec = QuerySpec(DEFAULT_TENANT)
    with staging_session(engine) as session:
        started = time.perf_counter()
        staged = prepare_table(session, fake_results(DEFAULT_TENANT, matches, chunk), chunk_size=chunk)
        staged_ms = (time.perf_counter() - started) * 1000.0
        staged_rows = staged.count()

        started = time.perf_counter()
        with query_items(session, spec, date.today(), 0, Batch.first(limit), staged) as cursor:
            rows = list(cursor)
        join_ms = (time.perf_counter() - started) * 1000.0
        total = count_items(session, spec, date.today(), staged)

    log.info("Staging took %.1f ms, join took %.1f ms", staged_ms, join_ms)
    print(f"dialect:      {session.dialect_name}")
    print(f"staged rows:  {staged_rows} in {staged.stats.flushes} flushes ({staged_ms:.1f} ms)")
    print(f"joined rows:  {total} total, {len(rows)} returned ({join_ms:.1f} ms)")
    for row in rows:
        score = row.context.score if row.context else None
        print(f"  {row.id:<12} score={score:.4f}" if score is not None else f"  {row.id:<12} score=-")
    return 0 if rows else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Time staging of search results and the catalog join")
    ap.add_argument("--url", help="Database URL (default: DATABASE_URL / .env)")
    ap.add_argument("--matches", type=int, default=3000, help="Items reported by the fake search engine")
    ap.add_argument("--chunk", type=int, default=500, help="Batch size of the fake engine and flush size")
    ap.add_argument("--items", type=int, default=200, help="Catalog items to seed")
    ap.add_argument("--limit", type=int, default=10, help="Rows to fetch from the join")
    ap.add_argument("--no-seed", action="store_true", help="Use the catalog as it is")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args(argv)

    logging_setup.start_log(app_name="staging_benchmark", level=args.log_level, to_file=False)

    if args.url:
        engine = create_engine_for(args.url)
        set_engine(engine)
    else:
        engine = get_engine()

    return run(
        engine,
        matches=args.matches,
        chunk=args.chunk,
        items=args.items,
        limit=args.limit,
        seed_data=not args.no_seed,
    )


if __name__ == "__main__":
    raise SystemExit(main())
