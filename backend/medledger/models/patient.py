"""
Indexed patient subjects.
"""

from datetime import datetime
from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Index

from medledger.db.postgres import Base, JsonDocument


class IndexedPatient(Base):
    """
    Denormalized patient row.

    Created on first registration (or as a stub when a record/grant refers
    to an unregistered address). Counters are only ever changed with
    relative updates by the event projector.
    """

    __tablename__ = "indexed_patient"

    patient_address = Column(String(42), primary_key=True)  # lowercase
    profile_cid = Column(String(128), nullable=True)

    # Hydrated from the content store (NULL until resolved)
    profile_metadata = Column(JsonDocument, nullable=True)
    profile_hydrated_at = Column(DateTime, nullable=True)
    profile_hydration_attempts = Column(Integer, default=0, nullable=False)
    profile_hydration_attempted_at = Column(DateTime, nullable=True)  # last unresolved fetch

    # Aggregated counters
    total_records = Column(Integer, default=0, nullable=False)
    active_consents = Column(Integer, default=0, nullable=False)
    last_activity = Column(DateTime, nullable=True)

    # Ledger tracking
    registration_tx_hash = Column(String(66), nullable=True)
    registration_block_number = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_indexed_patient_last_activity", "last_activity"),
    )

    @property
    def display_name(self):
        """'First Last' from the hydrated profile, if any."""
        profile = self.profile_metadata or {}
        name = f"{profile.get('firstName') or ''} {profile.get('lastName') or ''}".strip()
        return name or None
