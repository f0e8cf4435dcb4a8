# fts_catalog/app/fts_result.py
"""Value types for what the full-text search engine hands back.

The engine is an external collaborator; all this package sees is an iterable
of :class:`SearchResultBatch` objects, one per page the engine produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class ItemData:
    """The match hit the item's own text (name, notes, ...)."""


@dataclass(frozen=True)
class AttachmentData:
    """The match hit the extracted text of one attachment."""

    attachment_id: str
    filename: Optional[str] = None


MatchTarget = Union[ItemData, AttachmentData]

ITEM_DATA = ItemData()


@dataclass(frozen=True)
class ItemMatch:
    match_id: str
    item_id: str
    tenant_id: str
    score: float
    target: MatchTarget = ITEM_DATA

    @property
    def is_attachment(self) -> bool:
        return isinstance(self.target, AttachmentData)

    @property
    def attachment_name(self) -> Optional[str]:
        if isinstance(self.target, AttachmentData):
            return self.target.filename
        return None


@dataclass(frozen=True)
class SearchResultBatch:
    count: int = 0
    highlights: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    matches: Tuple[ItemMatch, ...] = ()

    @classmethod
    def empty(cls) -> "SearchResultBatch":
        return cls()

    def snippets_for(self, match_id: str) -> Tuple[str, ...]:
        return tuple(self.highlights.get(match_id, ()))

    def __len__(self) -> int:
        return len(self.matches)
