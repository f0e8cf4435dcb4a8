# fts_catalog/services/__init__.py
"""Staging of search results and the catalog join built on top of it."""

from .temp_table import StagingRow, TempTable, create_table
from .search_stager import StagingStats, prepare_table
from .item_query import (
    ItemCursor,
    MatchContext,
    QuerySpec,
    ResultRow,
    count_items,
    query_items,
    search_items,
)

__all__ = [
    "StagingRow",
    "TempTable",
    "create_table",
    "StagingStats",
    "prepare_table",
    "ItemCursor",
    "MatchContext",
    "QuerySpec",
    "ResultRow",
    "count_items",
    "query_items",
    "search_items",
]
