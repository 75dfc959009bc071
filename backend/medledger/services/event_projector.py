"""
EventProjector: applies typed ledger events to the denormalized tables.

Each event is applied in its own transaction:
1. Claim the RawEvent row (insert on conflict do nothing, then lock it)
2. Skip it if an earlier pass already processed it
3. Run the type-specific projection inside a SAVEPOINT
4. Mark the RawEvent processed (or keep the projection error on it)

Counters are only changed with relative updates (`col = col + delta`) so
the live path and the catch-up path can race on the same subject.
"""

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from medledger.db.postgres import Database, insert_for
from medledger.models import (
    AccessGrant,
    IndexedPatient,
    IndexedProvider,
    IndexedRecord,
    RawEvent,
    SearchEntry,
)
from medledger.services.ledger_events import (
    AccessGranted,
    AccessRevoked,
    LedgerEvent,
    PatientRegistered,
    ProviderRegistered,
    RecordUploaded,
    UnknownEvent,
    event_args,
    stored_event_name,
)

# processing_error column is TEXT, but keep stored tracebacks readable
MAX_ERROR_LENGTH = 2000


class EventProjector:
    """
    Writes ledger events into the store, exactly once per (tx hash, log index).

    Usage:
        projector = EventProjector(database)
        applied = projector.apply(event)
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = datetime.utcnow):
        self.database = database
        self.clock = clock
        self.logger = logging.getLogger("service.EventProjector")

    def apply(self, event: LedgerEvent) -> bool:
        """
        Record and project one event.

        Returns True if the projection ran now, False if the event was
        already processed, could not be decoded, or its projection failed.
        Store errors outside the projection propagate to the caller.
        """
        now = self.clock()
        with self.database.session_scope() as session:
            raw = self._claim(session, event, now)

            if raw.processed:
                self.logger.debug(
                    f"Skipping already processed {raw.event_name} "
                    f"{raw.transaction_hash}:{raw.log_index}"
                )
                return False

            if isinstance(event, UnknownEvent):
                raw.processing_error = (event.reason or "undecodable log")[:MAX_ERROR_LENGTH]
                self.logger.warning(
                    f"Stored undecodable {event.raw_event_name} at "
                    f"{raw.transaction_hash}:{raw.log_index}: {event.reason}"
                )
                return False

            try:
                with session.begin_nested():
                    self._project(session, event, now)
            except Exception as e:
                raw.processing_error = f"{type(e).__name__}: {e}"[:MAX_ERROR_LENGTH]
                self.logger.error(
                    f"Projection of {raw.event_name} at {raw.transaction_hash}:{raw.log_index} failed: {e}"
                )
                return False

            raw.processed = True
            raw.processed_at = now
            raw.processing_error = None

        self.logger.debug(
            f"Applied {stored_event_name(event)} at block {event.log.block_number} "
            f"({event.log.transaction_hash}:{event.log.log_index})"
        )
        return True

    # =========================================================================
    # Raw event claim
    # =========================================================================

    def _claim(self, session: Session, event: LedgerEvent, now: datetime) -> RawEvent:
        log = event.log
        stmt = insert_for(session, RawEvent).values(
            event_name=stored_event_name(event),
            contract_name=log.contract_name,
            contract_address=log.contract_address,
            transaction_hash=log.transaction_hash,
            block_number=log.block_number,
            log_index=log.log_index,
            args_json=event_args(event),
            processed=False,
            created_at=now,
        ).on_conflict_do_nothing(index_elements=["transaction_hash", "log_index"])
        session.execute(stmt)

        return (
            session.query(RawEvent)
            .filter(
                RawEvent.transaction_hash == log.transaction_hash,
                RawEvent.log_index == log.log_index,
            )
            .with_for_update()
            .one()
        )

    def _project(self, session: Session, event: LedgerEvent, now: datetime) -> None:
        if isinstance(event, PatientRegistered):
            self._on_patient_registered(session, event, now)
        elif isinstance(event, ProviderRegistered):
            self._on_provider_registered(session, event, now)
        elif isinstance(event, RecordUploaded):
            self._on_record_uploaded(session, event, now)
        elif isinstance(event, AccessGranted):
            self._on_access_granted(session, event, now)
        elif isinstance(event, AccessRevoked):
            self._on_access_revoked(session, event, now)
        else:
            raise TypeError(f"No projection for {type(event).__name__}")

    # =========================================================================
    # Subject rows
    # =========================================================================

    def _ensure_patient(self, session: Session, address: str, now: datetime) -> None:
        """Stub row so relative counter updates always have a target."""
        stmt = insert_for(session, IndexedPatient).values(
            patient_address=address,
            total_records=0,
            active_consents=0,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["patient_address"])
        session.execute(stmt)

    def _ensure_provider(self, session: Session, address: str, now: datetime) -> None:
        stmt = insert_for(session, IndexedProvider).values(
            provider_address=address,
            active_access_grants=0,
            total_records_uploaded=0,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["provider_address"])
        session.execute(stmt)

    def _bump_patient(self, session: Session, address: str, now: datetime, **deltas: int) -> None:
        values = {getattr(IndexedPatient, name): getattr(IndexedPatient, name) + delta
                  for name, delta in deltas.items()}
        values[IndexedPatient.last_activity] = now
        session.query(IndexedPatient).filter(
            IndexedPatient.patient_address == address
        ).update(values, synchronize_session=False)

    def _bump_provider(self, session: Session, address: str, now: datetime, **deltas: int) -> None:
        values = {getattr(IndexedProvider, name): getattr(IndexedProvider, name) + delta
                  for name, delta in deltas.items()}
        values[IndexedProvider.last_activity] = now
        session.query(IndexedProvider).filter(
            IndexedProvider.provider_address == address
        ).update(values, synchronize_session=False)

    # =========================================================================
    # Projections
    # =========================================================================

    def _on_patient_registered(self, session: Session, event: PatientRegistered, now: datetime) -> None:
        # A new profile reference invalidates the resolved profile
        session.query(IndexedPatient).filter(
            IndexedPatient.patient_address == event.patient_address,
            IndexedPatient.profile_cid.is_distinct_from(event.profile_cid),
        ).update(
            {
                IndexedPatient.profile_metadata: None,
                IndexedPatient.profile_hydrated_at: None,
                IndexedPatient.profile_hydration_attempts: 0,
                IndexedPatient.profile_hydration_attempted_at: None,
            },
            synchronize_session=False,
        )

        stmt = insert_for(session, IndexedPatient).values(
            patient_address=event.patient_address,
            profile_cid=event.profile_cid,
            total_records=0,
            active_consents=0,
            last_activity=now,
            registration_tx_hash=event.log.transaction_hash,
            registration_block_number=event.log.block_number,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["patient_address"],
            set_={
                "profile_cid": stmt.excluded.profile_cid,
                "registration_tx_hash": stmt.excluded.registration_tx_hash,
                "registration_block_number": stmt.excluded.registration_block_number,
                "last_activity": stmt.excluded.last_activity,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        self.logger.info(f"Patient registered: {event.patient_address}")

    def _on_provider_registered(self, session: Session, event: ProviderRegistered, now: datetime) -> None:
        stmt = insert_for(session, IndexedProvider).values(
            provider_address=event.provider_address,
            name=event.name,
            specialty=event.specialty,
            license_number=event.license_number,
            active_access_grants=0,
            total_records_uploaded=0,
            last_activity=now,
            registration_tx_hash=event.log.transaction_hash,
            registration_block_number=event.log.block_number,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_address"],
            set_={
                "name": stmt.excluded.name,
                "specialty": stmt.excluded.specialty,
                "license_number": stmt.excluded.license_number,
                "registration_tx_hash": stmt.excluded.registration_tx_hash,
                "registration_block_number": stmt.excluded.registration_block_number,
                "last_activity": stmt.excluded.last_activity,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        self.logger.info(f"Provider registered: {event.provider_address} ({event.name})")

    def _on_record_uploaded(self, session: Session, event: RecordUploaded, now: datetime) -> None:
        self._ensure_patient(session, event.patient_address, now)
        if event.provider_address:
            self._ensure_provider(session, event.provider_address, now)

        stmt = insert_for(session, IndexedRecord).values(
            record_id=event.record_id,
            patient_address=event.patient_address,
            provider_address=event.provider_address,
            record_cid=event.record_cid,
            upload_tx_hash=event.log.transaction_hash,
            upload_block_number=event.log.block_number,
            upload_log_index=event.log.log_index,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["record_id"])
        inserted = session.execute(stmt).rowcount == 1

        if inserted:
            self._bump_patient(session, event.patient_address, now, total_records=1)
            if event.provider_address:
                self._bump_provider(session, event.provider_address, now, total_records_uploaded=1)
            self.logger.info(f"Record uploaded: {event.record_id} for {event.patient_address}")
            return

        # Re-upload of a known record id: ownership stays, the content reference may move
        changed = session.query(IndexedRecord).filter(
            IndexedRecord.record_id == event.record_id,
            IndexedRecord.record_cid != event.record_cid,
        ).update(
            {
                IndexedRecord.record_cid: event.record_cid,
                IndexedRecord.record_metadata: None,
                IndexedRecord.category: None,
                IndexedRecord.record_date: None,
                IndexedRecord.searchable_text: None,
                IndexedRecord.hydrated_at: None,
                IndexedRecord.hydration_attempts: 0,
                IndexedRecord.hydration_attempted_at: None,
                IndexedRecord.upload_tx_hash: event.log.transaction_hash,
                IndexedRecord.upload_block_number: event.log.block_number,
                IndexedRecord.upload_log_index: event.log.log_index,
                IndexedRecord.updated_at: now,
            },
            synchronize_session=False,
        )
        if changed:
            session.query(SearchEntry).filter(
                SearchEntry.record_id == event.record_id
            ).delete(synchronize_session=False)
            self.logger.info(f"Record {event.record_id} re-uploaded with new content reference")

    def _on_access_granted(self, session: Session, event: AccessGranted, now: datetime) -> None:
        self._ensure_patient(session, event.patient_address, now)
        self._ensure_provider(session, event.provider_address, now)

        stmt = insert_for(session, AccessGrant).values(
            patient_address=event.patient_address,
            provider_address=event.provider_address,
            access_type=event.scope.value,
            record_id=event.record_id,
            expiry_timestamp=event.expiry_timestamp,
            is_active=True,
            is_revoked=False,
            grant_tx_hash=event.log.transaction_hash,
            grant_block_number=event.log.block_number,
            grant_log_index=event.log.log_index,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["grant_tx_hash", "grant_log_index"])
        if session.execute(stmt).rowcount != 1:
            return

        self._bump_patient(session, event.patient_address, now, active_consents=1)
        self._bump_provider(session, event.provider_address, now, active_access_grants=1)
        self.logger.info(
            f"Access granted: {event.patient_address} -> {event.provider_address} "
            f"({event.scope.value}{', record ' + event.record_id if event.record_id else ''})"
        )

    def _on_access_revoked(self, session: Session, event: AccessRevoked, now: datetime) -> None:
        query = session.query(AccessGrant).filter(
            AccessGrant.patient_address == event.patient_address,
            AccessGrant.provider_address == event.provider_address,
            AccessGrant.access_type == event.scope.value,
            AccessGrant.is_active.is_(True),
            AccessGrant.is_revoked.is_(False),
        )
        if event.record_id:
            query = query.filter(AccessGrant.record_id == event.record_id)
        else:
            query = query.filter(AccessGrant.record_id.is_(None))

        # Overlapping open grants: the most recently granted one is revoked
        grant = (
            query.order_by(AccessGrant.grant_block_number.desc(), AccessGrant.grant_log_index.desc())
            .with_for_update()
            .first()
        )
        if grant is None:
            self.logger.warning(
                f"Revoke without matching active grant: {event.patient_address} -> "
                f"{event.provider_address} ({event.scope.value}, record={event.record_id})"
            )
            return

        grant.is_active = False
        grant.is_revoked = True
        grant.revoked_at = now
        grant.revoke_tx_hash = event.log.transaction_hash
        grant.revoke_block_number = event.log.block_number
        grant.updated_at = now
        session.flush()

        self._bump_patient(session, event.patient_address, now, active_consents=-1)
        self._bump_provider(session, event.provider_address, now, active_access_grants=-1)
        self.logger.info(
            f"Access revoked: {event.patient_address} -> {event.provider_address} "
            f"(grant {grant.grant_id})"
        )
