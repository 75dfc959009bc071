"""
Database connection for the ledger indexer.

- PostgreSQL: authoritative off-chain mirror (via SQLAlchemy)
"""

from .postgres import Base, Database, JsonDocument, insert_for

__all__ = [
    "Base",
    "Database",
    "JsonDocument",
    "insert_for",
]
