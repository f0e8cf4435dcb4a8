# fts_catalog/tools/ddl_preview.py
# Print the statements the staging layer issues, for one or all dialects.
# No database connection is needed:  python -m fts_catalog.tools.ddl_preview --dialect mariadb

from __future__ import annotations

import argparse
from datetime import date
from typing import List, Optional, Sequence

from fts_catalog.app.dialects import adapter_for, known_dialects
from fts_catalog.app.errors import UnsupportedConstruct
from fts_catalog.app.query_builder import Batch, Rendered, create_index, create_table, insert_all
from fts_catalog.services.item_query import QuerySpec, build_item_query
from fts_catalog.services.temp_table import (
    FOLLOW_COLUMNS,
    SCORE_COLUMNS,
    StagingRow,
    TempTable,
    staging_schema,
)


class _PreviewSession:
    """Enough of a StagingSession for building statements offline."""

    def __init__(self, dialect: str):
        self.adapter = adapter_for(dialect)

    @property
    def dialect_name(self) -> str:
        return self.adapter.name


def preview(dialect: str, table_name: str = "fts_result", tenant: str = "demo") -> List[tuple[str, Rendered]]:
    adapter = adapter_for(dialect)
    schema = staging_schema(table_name)
    table = adapter.temporary_table(schema)
    handle = TempTable(_PreviewSession(dialect), schema, table)  # type: ignore[arg-type]

    sample = [
        StagingRow("item-1", 0.75, None, None).as_params(),
        StagingRow("item-2", 0.5, 0.5, None).as_params(),
    ]
    out: List[tuple[str, Rendered]] = [
        ("create temporary table", create_table(schema).render(adapter)),
        (
            "merge insert",
            insert_all(table, sample, merge="max", greatest=SCORE_COLUMNS, follow=FOLLOW_COLUMNS).render(adapter),
        ),
        ("create index", create_index(table, [table.c.id]).render(adapter)),
        (
            "joined item query",
            build_item_query(QuerySpec(tenant), date.today(), 0, Batch.first(10), handle).render(adapter),
        ),
    ]
    drop = adapter.drop_temporary_table_ddl(table_name)
    out.append(("scope exit", Rendered(drop or "-- dropped by ON COMMIT DROP", [])))
    return out


def print_preview(dialect: str, table_name: str) -> None:
    adapter = adapter_for(dialect)
    print(f"\n== {adapter.name} (reliable bulk row count: {adapter.bulk_insert_reliable_row_count()})")
    try:
        statements = preview(dialect, table_name)
    except UnsupportedConstruct as exc:
        print(f"  unsupported: {exc}")
        return
    for label, rendered in statements:
        print(f"\n-- {label}")
        print(rendered.sql)
        if rendered.params:
            print(f"-- params: {rendered.params}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Show staging/join SQL for each supported dialect")
    ap.add_argument("--dialect", choices=sorted(known_dialects()), help="Only show one dialect")
    ap.add_argument("--table", default="fts_result", help="Temporary table name (default: fts_result)")
    args = ap.parse_args(argv)

    dialects = [args.dialect] if args.dialect else list(known_dialects())
    for dialect in dialects:
        print_preview(dialect, args.table)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
