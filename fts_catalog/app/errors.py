# fts_catalog/app/errors.py
from __future__ import annotations

from typing import Optional

# All errors propagate to the caller of the join engine. The route layer that
# sits on top of this package maps them to API failures.


class CatalogStoreError(Exception):
    """Base class for everything raised by the staging and join layer."""


class TableCreationError(CatalogStoreError):
    """The temporary table could not be created (name collision or dialect rejection)."""

    def __init__(self, table_name: str, message: Optional[str] = None):
        self.table_name = table_name
        super().__init__(message or f"Unable to create temporary table {table_name!r}")


class StagingInsertError(CatalogStoreError):
    """Inserting staging rows failed; the partial stage must be discarded."""

    def __init__(self, table_name: str, message: Optional[str] = None):
        self.table_name = table_name
        super().__init__(message or f"Unable to insert rows into {table_name!r}")


class UnsupportedConstruct(CatalogStoreError):
    """A statement uses a construct the target dialect cannot express."""

    def __init__(self, dialect: str, construct: str):
        self.dialect = dialect
        self.construct = construct
        super().__init__(f"{construct} is not supported by the {dialect} dialect")


class DialectMismatchError(CatalogStoreError):
    """The configured dialect does not match the live connection."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Configured dialect {expected!r} does not match connection dialect {actual!r}")


__all__ = [
    "CatalogStoreError",
    "TableCreationError",
    "StagingInsertError",
    "UnsupportedConstruct",
    "DialectMismatchError",
]
