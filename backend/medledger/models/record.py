"""
Indexed medical records and their search entries.
"""

from datetime import datetime
from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text, Index

from medledger.db.postgres import Base, JsonDocument


class IndexedRecord(Base):
    """
    Medical record announced by a RecordUploaded event.

    The hydrated columns (record_metadata, category, record_date,
    searchable_text, hydrated_at) are written together in one UPDATE:
    either all are NULL or all are set.
    """

    __tablename__ = "indexed_record"

    record_id = Column(String(100), primary_key=True)
    patient_address = Column(String(42), nullable=False)
    provider_address = Column(String(42), nullable=True)
    record_cid = Column(String(128), nullable=False)

    # Hydrated from the content store
    record_metadata = Column(JsonDocument, nullable=True)
    category = Column(String(50), nullable=True)
    record_date = Column(DateTime, nullable=True)
    searchable_text = Column(Text, nullable=True)
    hydrated_at = Column(DateTime, nullable=True)
    hydration_attempts = Column(Integer, default=0, nullable=False)
    hydration_attempted_at = Column(DateTime, nullable=True)  # last unresolved fetch

    # Ledger tracking; (block, log index) is also the internal row order
    upload_tx_hash = Column(String(66), nullable=True)
    upload_block_number = Column(BigInteger, nullable=True)
    upload_log_index = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_indexed_record_patient", "patient_address"),
        Index("idx_indexed_record_provider", "provider_address"),
        Index("idx_indexed_record_category", "category"),
        Index("idx_indexed_record_date", "record_date"),
    )

    @property
    def is_hydrated(self) -> bool:
        return self.record_metadata is not None


class SearchEntry(Base):
    """Denormalized full-text entry, refreshed whenever a record hydrates."""

    __tablename__ = "search_entry"

    record_id = Column(String(100), primary_key=True)
    patient_address = Column(String(42), nullable=False)
    title = Column(Text, nullable=True)
    content = Column(Text, nullable=True)  # normalized, lower-cased body
    keywords = Column(JsonDocument, nullable=True)
    category = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_search_entry_patient", "patient_address"),
        Index("idx_search_entry_category", "category"),
    )
