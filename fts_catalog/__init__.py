"""Stage full-text search results next to the item catalog and page through the joined rows."""

__version__ = "0.1.0"
