"""
Core building blocks: configuration, logging, database access, the statement
builder and the per-dialect adapters.

Avoid side effects here; no network, DB, or logging setup.
"""
