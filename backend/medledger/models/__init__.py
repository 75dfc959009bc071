"""
SQLAlchemy models for the ledger indexer.

These are the authoritative tables of the off-chain mirror.
"""

from .ledger import RawEvent, IngestCheckpoint
from .patient import IndexedPatient
from .provider import IndexedProvider
from .record import IndexedRecord, SearchEntry
from .access_grant import AccessGrant, AccessScope
from .content_cache import ContentCacheEntry

__all__ = [
    # Ledger ingestion
    "RawEvent",
    "IngestCheckpoint",
    # Subjects
    "IndexedPatient",
    "IndexedProvider",
    # Records
    "IndexedRecord",
    "SearchEntry",
    # Access control
    "AccessGrant",
    "AccessScope",
    # Content cache
    "ContentCacheEntry",
]
