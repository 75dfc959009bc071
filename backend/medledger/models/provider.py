"""
Indexed healthcare providers.
"""

from datetime import datetime
from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Index

from medledger.db.postgres import Base


class IndexedProvider(Base):
    """
    Provider registered on the ProviderRegistry contract.

    Name, specialty and license number are emitted on-chain, so providers
    need no content hydration.
    """

    __tablename__ = "indexed_provider"

    provider_address = Column(String(42), primary_key=True)  # lowercase

    # Provider identification
    name = Column(String(255), nullable=True)
    specialty = Column(String(100), nullable=True)
    license_number = Column(String(100), nullable=True)

    # Aggregated counters
    active_access_grants = Column(Integer, default=0, nullable=False)
    total_records_uploaded = Column(Integer, default=0, nullable=False)
    last_activity = Column(DateTime, nullable=True)

    # Ledger tracking
    registration_tx_hash = Column(String(66), nullable=True)
    registration_block_number = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_indexed_provider_specialty", "specialty"),
    )
