# fts_catalog/services/search_stager.py
"""Materialize a stream of search-engine results into a temporary table.

The engine yields its results page by page.  Each match becomes a staging row
keyed by the owning item, rows for the same item are collapsed (larger score
wins) while they wait in memory, and whenever ``chunk_size`` distinct items
are pending they are merge-inserted into the table.  The table is indexed
once the stream is exhausted and only then handed to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

from fts_catalog.app.config_loader import get_staging_chunk_size, get_staging_table_name
from fts_catalog.app.db import StagingSession
from fts_catalog.app.fts_result import ItemMatch, SearchResultBatch

from .temp_table import StagingRow, TempTable, create_table, encode_context, merge_rows

log = logging.getLogger(__name__)


@dataclass
class StagingStats:
    batches: int = 0
    matches: int = 0
    rows_flushed: int = 0
    flushes: int = 0
    reported_inserts: int = 0
    elapsed_ms: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "batches": self.batches,
            "matches": self.matches,
            "rows_flushed": self.rows_flushed,
            "flushes": self.flushes,
            "reported_inserts": self.reported_inserts,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }


def match_to_row(match: ItemMatch, batch: SearchResultBatch) -> StagingRow:
    snippets = batch.snippets_for(match.match_id)
    return StagingRow(
        id=match.item_id,
        score=match.score,
        secondary_score=match.score if match.is_attachment else None,
        context=encode_context(snippets, match.attachment_name),
    )


def staging_rows(batch: SearchResultBatch) -> Iterator[StagingRow]:
    """One row per match, keyed by item id; duplicates are left for the flush window."""
    for match in batch.matches:
        yield match_to_row(match, batch)


class FlushWindow:
    """In-flight rows waiting to be written, at most one per item id."""

    def __init__(self) -> None:
        self._pending: Dict[str, StagingRow] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, row: StagingRow) -> None:
        self._pending[row.id] = merge_rows(self._pending.get(row.id), row)

    def drain(self) -> List[StagingRow]:
        rows = list(self._pending.values())
        self._pending.clear()
        return rows


def _flush(table: TempTable, window: FlushWindow, stats: StagingStats) -> None:
    rows = window.drain()
    if not rows:
        return
    reported = table.insert_all(rows)
    stats.flushes += 1
    stats.rows_flushed += len(rows)
    if reported and reported > 0:
        stats.reported_inserts += reported
    log.debug("Flushed %d staging rows into %s (flush #%d)", len(rows), table.name, stats.flushes)


def prepare_table(
    session: StagingSession,
    batches: Iterable[SearchResultBatch],
    name: Optional[str] = None,
    *,
    chunk_size: Optional[int] = None,
) -> TempTable:
    """Stage every batch into a fresh temporary table and return the finished handle.

    Batches are consumed strictly in order.  Any failure propagates and no
    handle is returned; the enclosing :func:`staging_session` rolls back and
    drops the partial table.
    """
    table_name = name or get_staging_table_name()
    limit = chunk_size if chunk_size is not None else get_staging_chunk_size()
    if limit <= 0:
        raise ValueError("chunk_size must be positive")

    started = time.perf_counter()
    table = create_table(session, table_name)
    window = FlushWindow()
    stats = StagingStats()

    for batch in batches:
        stats.batches += 1
        for row in staging_rows(batch):
            stats.matches += 1
            window.add(row)
            if len(window) >= limit:
                _flush(table, window, stats)
    _flush(table, window, stats)

    table.create_index()
    stats.elapsed_ms = (time.perf_counter() - started) * 1000.0
    table.seal(stats)
    log.info(
        "Staged %d matches from %d batches into %s: %d rows in %d flushes (%.1f ms)",
        stats.matches,
        stats.batches,
        table.name,
        stats.rows_flushed,
        stats.flushes,
        stats.elapsed_ms,
    )
    return table
