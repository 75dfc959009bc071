"""
Access grants from the AccessControl contract.
"""

import enum
from datetime import datetime
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Index,
    UniqueConstraint,
)

from medledger.db.postgres import Base


class AccessScope(enum.Enum):
    """What a grant covers."""
    GENERAL = "general"
    RECORD_SPECIFIC = "record-specific"


class AccessGrant(Base):
    """
    One grant of patient data to a provider.

    Never deleted: a revoke flips is_active/is_revoked and records the
    revoking transaction, so the grant history stays queryable.
    """

    __tablename__ = "access_grant"

    grant_id = Column(Integer, primary_key=True, autoincrement=True)

    patient_address = Column(String(42), nullable=False)
    provider_address = Column(String(42), nullable=False)
    access_type = Column(String(20), nullable=False)  # AccessScope value
    record_id = Column(String(100), nullable=True)  # NULL for general access
    expiry_timestamp = Column(BigInteger, nullable=True)  # unix seconds

    # Status tracking
    is_active = Column(Boolean, default=True, nullable=False)
    is_revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)

    # Ledger tracking
    grant_tx_hash = Column(String(66), nullable=False)
    grant_block_number = Column(BigInteger, nullable=False)
    grant_log_index = Column(Integer, nullable=False)
    revoke_tx_hash = Column(String(66), nullable=True)
    revoke_block_number = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("grant_tx_hash", "grant_log_index", name="uq_access_grant_origin"),
        Index("idx_access_grant_patient", "patient_address"),
        Index("idx_access_grant_provider", "provider_address"),
        Index("idx_access_grant_record", "record_id"),
        Index("idx_access_grant_active", "is_active", "is_revoked"),
    )
