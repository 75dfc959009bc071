"""
Raw ledger event log and ingestion checkpoint.
"""

from datetime import datetime
from sqlalchemy import (
    Boolean,
    BigInteger,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
)

from medledger.db.postgres import Base, JsonDocument


class RawEvent(Base):
    """
    One observed contract log, exactly as decoded at the RPC boundary.

    Immutable once written except for the processing bookkeeping columns.
    Natural key: (transaction_hash, log_index).
    """

    __tablename__ = "ledger_event"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Event identification
    event_name = Column(String(100), nullable=False)
    contract_name = Column(String(100), nullable=True)
    contract_address = Column(String(42), nullable=False)
    transaction_hash = Column(String(66), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    log_index = Column(Integer, nullable=False)

    # Decoded arguments (typed event fields, serialized)
    args_json = Column(JsonDocument, nullable=False)

    # Processing status
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processing_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_ledger_event_tx_log"),
        Index("idx_ledger_event_block", "block_number"),
        Index("idx_ledger_event_processed", "processed"),
        Index("idx_ledger_event_name", "event_name"),
    )


class IngestCheckpoint(Base):
    """
    Last block whose events are durably applied, per watched contract set.
    """

    __tablename__ = "ingest_checkpoint"

    watch_set = Column(String(64), primary_key=True)
    last_block = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
