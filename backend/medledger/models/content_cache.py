"""
Cache of resolved content-addressed payloads.
"""

from datetime import datetime
from sqlalchemy import Column, DateTime, Integer, String, Index

from medledger.db.postgres import Base, JsonDocument


class ContentCacheEntry(Base):
    """Gateway payload keyed by normalized CID, with TTL and access accounting."""

    __tablename__ = "content_cache_entry"

    cid = Column(String(128), primary_key=True)
    payload = Column(JsonDocument, nullable=False)

    # Cache management
    fetched_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    last_accessed = Column(DateTime, default=datetime.utcnow, nullable=False)
    access_count = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("idx_content_cache_expires_at", "expires_at"),
    )
