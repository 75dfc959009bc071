"""
IndexQueryService: read-only views over the indexed tables.

Powers dashboards and search without touching the ledger or the gateway.
Every operation:
- validates its input first and raises QueryValidationError before any
  store access
- never mutates counters or hydration state
- turns store failures into "no result" (None / empty page) after logging

Unhydrated fields come back as None so callers can render progressively.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, asc, desc, func, nulls_last, or_, select

from medledger.db.postgres import Database
from medledger.models import (
    AccessGrant,
    AccessScope,
    IndexedPatient,
    IndexedProvider,
    IndexedRecord,
    SearchEntry,
)
from medledger.services.errors import QueryValidationError
from medledger.services.identifiers import require_address

MAX_PAGE_SIZE = 100
MIN_SEARCH_LENGTH = 3
DASHBOARD_RECENT_RECORDS = 5
RECENT_ACTIVITY_DAYS = 30
SORT_FIELDS = ("recordDate", "uploadedAt")
SORT_ORDERS = ("asc", "desc")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Inputs
# =============================================================================

@dataclass
class Pagination:
    page: int = 1
    limit: int = 20
    sort_by: str = "recordDate"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def validate(self) -> None:
        if not isinstance(self.page, int) or isinstance(self.page, bool) or self.page < 1:
            raise QueryValidationError(f"page must be an integer >= 1, got {self.page!r}")
        if (not isinstance(self.limit, int) or isinstance(self.limit, bool)
                or not 1 <= self.limit <= MAX_PAGE_SIZE):
            raise QueryValidationError(
                f"limit must be an integer between 1 and {MAX_PAGE_SIZE}, got {self.limit!r}"
            )
        if self.sort_by not in SORT_FIELDS:
            raise QueryValidationError(f"sort_by must be one of {SORT_FIELDS}, got {self.sort_by!r}")
        if self.sort_order not in SORT_ORDERS:
            raise QueryValidationError(
                f"sort_order must be one of {SORT_ORDERS}, got {self.sort_order!r}"
            )


@dataclass
class RecordFilter:
    """Filters for the record listing. All optional, combined with AND."""
    category: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    provider: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    search_query: Optional[str] = None

    def validate(self) -> "RecordFilter":
        """Checked copy with the provider normalized and a blank search dropped."""
        for name in ("date_from", "date_to"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, datetime):
                raise QueryValidationError(f"{name} must be a datetime, got {value!r}")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise QueryValidationError("date_from must not be after date_to")
        if self.search_query is not None and not isinstance(self.search_query, str):
            raise QueryValidationError(f"search_query must be a string, got {self.search_query!r}")
        provider = self.provider
        if provider is not None:
            provider = require_address(provider, "provider address")
        search_query = self.search_query
        if search_query is not None and not search_query.strip():
            search_query = None
        return replace(self, provider=provider, search_query=search_query)


# =============================================================================
# Results
# =============================================================================

@dataclass
class RecordView:
    """One record as shown in listings; metadata fields are None until hydrated."""
    record_id: str
    patient_address: str
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    record_date: Optional[datetime] = None
    provider_address: Optional[str] = None
    provider_name: Optional[str] = None
    provider_specialty: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    tags: Optional[List[str]] = None
    uploaded_at: Optional[datetime] = None
    hydrated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "patient_address": self.patient_address,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "record_date": _iso(self.record_date),
            "provider": {
                "address": self.provider_address,
                "name": self.provider_name,
                "specialty": self.provider_specialty,
            } if self.provider_address else None,
            "metadata": {
                "file_size": self.file_size,
                "mime_type": self.mime_type,
                "tags": self.tags,
            },
            "uploaded_at": _iso(self.uploaded_at),
            "hydrated": self.hydrated,
        }


@dataclass
class RecordPage:
    records: List[RecordView]
    total_count: int
    page: int = 1
    limit: int = 20

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.limit + self.limit < self.total_count

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.records],
            "total_count": self.total_count,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
            "has_more": self.has_more,
        }


@dataclass
class ProviderAccess:
    """A provider's access to one patient, grants merged."""
    provider_address: str
    access_type: str
    name: Optional[str] = None
    specialty: Optional[str] = None
    record_ids: List[str] = field(default_factory=list)
    granted_at: Optional[datetime] = None
    expiry_timestamp: Optional[int] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_address": self.provider_address,
            "name": self.name,
            "specialty": self.specialty,
            "access_type": self.access_type,
            "record_ids": list(self.record_ids),
            "granted_at": _iso(self.granted_at),
            "expiry_timestamp": self.expiry_timestamp,
            "is_active": self.is_active,
        }


@dataclass
class PatientDashboardSummary:
    patient_address: str
    profile: Optional[Dict[str, Any]]
    registration_date: Optional[datetime]
    last_activity: Optional[datetime]
    total_records: int
    active_consents: int
    records_by_category: Dict[str, int]
    recent_activity: int  # records indexed in the trailing 30 days
    recent_records: List[RecordView]
    active_providers: List[ProviderAccess]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient": {
                "address": self.patient_address,
                "profile": self.profile,
                "registration_date": _iso(self.registration_date),
                "last_activity": _iso(self.last_activity),
            },
            "stats": {
                "total_records": self.total_records,
                "active_consents": self.active_consents,
                "records_by_category": [
                    {"category": category, "count": count}
                    for category, count in self.records_by_category.items()
                ],
                "recent_activity": self.recent_activity,
            },
            "recent_records": [r.to_dict() for r in self.recent_records],
            "active_providers": [p.to_dict() for p in self.active_providers],
        }


@dataclass
class RecentPatient:
    """A patient a provider recently interacted with."""
    patient_address: str
    last_interaction: datetime
    interaction_type: str  # 'access_granted' or 'record_upload'
    patient_name: Optional[str] = None
    record_count: int = 0
    has_active_access: bool = False
    access_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_address": self.patient_address,
            "patient_name": self.patient_name,
            "last_interaction": _iso(self.last_interaction),
            "interaction_type": self.interaction_type,
            "record_count": self.record_count,
            "has_active_access": self.has_active_access,
            "access_type": self.access_type,
        }


# =============================================================================
# Service
# =============================================================================

class IndexQueryService:
    """
    Stateless read operations over the indexed store.

    Usage:
        queries = IndexQueryService(database)
        summary = queries.get_patient_dashboard_summary("0xabc...")
        page = queries.get_patient_past_records(
            "0xabc...", RecordFilter(category="lab"), Pagination(page=2, limit=10)
        )
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = datetime.utcnow):
        self.database = database
        self.clock = clock
        self.logger = logging.getLogger("service.IndexQueryService")

    # -------------------------------------------------------------------------
    # Patient views
    # -------------------------------------------------------------------------

    def get_patient_dashboard_summary(self, patient_address: str) -> Optional[PatientDashboardSummary]:
        """Patient row, per-category counts, 30-day activity, last 5 records and active providers."""
        address = require_address(patient_address, "patient address")
        try:
            with self.database.session_scope() as session:
                patient = session.get(IndexedPatient, address)
                if patient is None:
                    return None

                by_category = (
                    session.query(IndexedRecord.category, func.count(IndexedRecord.record_id))
                    .filter(IndexedRecord.patient_address == address)
                    .group_by(IndexedRecord.category)
                    .all()
                )

                since = self.clock() - timedelta(days=RECENT_ACTIVITY_DAYS)
                recent_activity = (
                    session.query(func.count(IndexedRecord.record_id))
                    .filter(
                        IndexedRecord.patient_address == address,
                        IndexedRecord.created_at >= since,
                    )
                    .scalar()
                )

                recent_rows = (
                    self._records_with_provider(session)
                    .filter(IndexedRecord.patient_address == address)
                    .order_by(
                        desc(IndexedRecord.upload_block_number),
                        desc(IndexedRecord.upload_log_index),
                    )
                    .limit(DASHBOARD_RECENT_RECORDS)
                    .all()
                )

                active_grants = (
                    self._grants_with_provider(session)
                    .filter(
                        AccessGrant.patient_address == address,
                        AccessGrant.is_active.is_(True),
                        AccessGrant.is_revoked.is_(False),
                    )
                    .order_by(desc(AccessGrant.grant_block_number), desc(AccessGrant.grant_log_index))
                    .all()
                )

                return PatientDashboardSummary(
                    patient_address=patient.patient_address,
                    profile=patient.profile_metadata,
                    registration_date=patient.created_at,
                    last_activity=patient.last_activity,
                    total_records=patient.total_records,
                    active_consents=patient.active_consents,
                    records_by_category={
                        (category or "unknown"): count for category, count in by_category
                    },
                    recent_activity=int(recent_activity or 0),
                    recent_records=[self._record_view(r, p) for r, p in recent_rows],
                    active_providers=self._group_grants(active_grants),
                )
        except Exception as e:
            self.logger.error(f"Dashboard summary for {address} failed: {e}", exc_info=True)
            return None

    def get_patient_past_records(
        self,
        patient_address: str,
        filters: Optional[RecordFilter] = None,
        pagination: Optional[Pagination] = None,
    ) -> RecordPage:
        """Filtered, sorted, paginated listing of a patient's records."""
        address = require_address(patient_address, "patient address")
        filters = filters or RecordFilter()
        pagination = pagination or Pagination()
        filters = filters.validate()
        pagination.validate()

        try:
            with self.database.session_scope() as session:
                conditions = [IndexedRecord.patient_address == address]
                if filters.category:
                    conditions.append(IndexedRecord.category == filters.category)
                if filters.date_from:
                    conditions.append(IndexedRecord.record_date >= filters.date_from)
                if filters.date_to:
                    conditions.append(IndexedRecord.record_date <= filters.date_to)
                if filters.provider:
                    conditions.append(IndexedRecord.provider_address == filters.provider)
                if filters.search_query:
                    conditions.append(IndexedRecord.searchable_text.contains(
                        filters.search_query.strip().lower(), autoescape=True
                    ))
                for tag in filters.tags or []:
                    if tag and str(tag).strip():
                        conditions.append(IndexedRecord.searchable_text.contains(
                            str(tag).strip().lower(), autoescape=True
                        ))

                total = (
                    session.query(func.count(IndexedRecord.record_id))
                    .filter(and_(*conditions))
                    .scalar()
                )
                rows = (
                    self._ordered(self._records_with_provider(session).filter(and_(*conditions)), pagination)
                    .limit(pagination.limit)
                    .offset(pagination.offset)
                    .all()
                )
                return RecordPage(
                    records=[self._record_view(r, p) for r, p in rows],
                    total_count=int(total or 0),
                    page=pagination.page,
                    limit=pagination.limit,
                )
        except Exception as e:
            self.logger.error(f"Past records for {address} failed: {e}", exc_info=True)
            return RecordPage(records=[], total_count=0, page=pagination.page, limit=pagination.limit)

    def get_patient_recent_uploads(self, patient_address: str, count: int = 10) -> List[RecordView]:
        address = require_address(patient_address, "patient address")
        if not isinstance(count, int) or not 1 <= count <= MAX_PAGE_SIZE:
            raise QueryValidationError(f"count must be between 1 and {MAX_PAGE_SIZE}, got {count!r}")
        try:
            with self.database.session_scope() as session:
                rows = (
                    self._records_with_provider(session)
                    .filter(IndexedRecord.patient_address == address)
                    .order_by(
                        desc(IndexedRecord.upload_block_number),
                        desc(IndexedRecord.upload_log_index),
                    )
                    .limit(count)
                    .all()
                )
                return [self._record_view(r, p) for r, p in rows]
        except Exception as e:
            self.logger.error(f"Recent uploads for {address} failed: {e}", exc_info=True)
            return []

    def get_patient_access_list(self, patient_address: str) -> List[ProviderAccess]:
        """
        Non-revoked grants of a patient, one entry per provider.

        A provider holding a general grant alongside record-specific ones is
        reported as 'general', with the specific record ids still listed.
        """
        address = require_address(patient_address, "patient address")
        try:
            with self.database.session_scope() as session:
                rows = (
                    self._grants_with_provider(session)
                    .filter(
                        AccessGrant.patient_address == address,
                        AccessGrant.is_revoked.is_(False),
                    )
                    .order_by(desc(AccessGrant.grant_block_number), desc(AccessGrant.grant_log_index))
                    .all()
                )
                return self._group_grants(rows)
        except Exception as e:
            self.logger.error(f"Access list for {address} failed: {e}", exc_info=True)
            return []

    # -------------------------------------------------------------------------
    # Provider views
    # -------------------------------------------------------------------------

    def get_provider_recent_patients(self, provider_address: str, max_results: int = 20) -> List[RecentPatient]:
        """
        Patients who recently granted access to, or had a record uploaded by,
        this provider. Latest interaction per patient wins.
        """
        address = require_address(provider_address, "provider address")
        if not isinstance(max_results, int) or not 1 <= max_results <= MAX_PAGE_SIZE:
            raise QueryValidationError(
                f"max_results must be between 1 and {MAX_PAGE_SIZE}, got {max_results!r}"
            )
        try:
            with self.database.session_scope() as session:
                # Over-fetch: several rows can belong to the same patient
                grants = (
                    session.query(AccessGrant)
                    .filter(AccessGrant.provider_address == address)
                    .order_by(desc(AccessGrant.created_at), desc(AccessGrant.grant_block_number))
                    .limit(max_results * 2)
                    .all()
                )
                uploads = (
                    session.query(IndexedRecord.patient_address, IndexedRecord.created_at)
                    .filter(IndexedRecord.provider_address == address)
                    .order_by(desc(IndexedRecord.created_at), desc(IndexedRecord.upload_block_number))
                    .limit(max_results * 2)
                    .all()
                )

                patients: Dict[str, RecentPatient] = {}
                for grant in grants:
                    current = patients.get(grant.patient_address)
                    active = grant.is_active and not grant.is_revoked
                    if current is None:
                        patients[grant.patient_address] = RecentPatient(
                            patient_address=grant.patient_address,
                            last_interaction=grant.created_at,
                            interaction_type="access_granted",
                            has_active_access=active,
                            access_type=grant.access_type if active else None,
                        )
                        continue
                    if active:
                        current.has_active_access = True
                        if current.access_type != AccessScope.GENERAL.value:
                            current.access_type = grant.access_type
                    if grant.created_at > current.last_interaction:
                        current.last_interaction = grant.created_at

                for patient_address, uploaded_at in uploads:
                    current = patients.get(patient_address)
                    if current is None:
                        patients[patient_address] = RecentPatient(
                            patient_address=patient_address,
                            last_interaction=uploaded_at,
                            interaction_type="record_upload",
                        )
                    elif uploaded_at > current.last_interaction:
                        current.last_interaction = uploaded_at
                        current.interaction_type = "record_upload"

                if not patients:
                    return []

                addresses = list(patients.keys())
                counts = (
                    session.query(IndexedRecord.patient_address, func.count(IndexedRecord.record_id))
                    .filter(
                        IndexedRecord.provider_address == address,
                        IndexedRecord.patient_address.in_(addresses),
                    )
                    .group_by(IndexedRecord.patient_address)
                    .all()
                )
                for patient_address, count in counts:
                    patients[patient_address].record_count = int(count)

                for patient in session.query(IndexedPatient).filter(
                    IndexedPatient.patient_address.in_(addresses)
                ):
                    patients[patient.patient_address].patient_name = patient.display_name

                ordered = sorted(patients.values(), key=lambda p: p.last_interaction, reverse=True)
                return ordered[:max_results]
        except Exception as e:
            self.logger.error(f"Recent patients for {address} failed: {e}", exc_info=True)
            return []

    def search_medical_records(
        self,
        search_query: str,
        provider_address: Optional[str] = None,
        pagination: Optional[Pagination] = None,
    ) -> RecordPage:
        """
        Substring search over search entries across patients.

        With a provider, results are limited to patients that granted the
        provider general access and records listed in its record-specific
        grants (active, non-revoked grants only).
        """
        text = (search_query or "").strip()
        if len(text) < MIN_SEARCH_LENGTH:
            raise QueryValidationError(
                f"search query must be at least {MIN_SEARCH_LENGTH} characters"
            )
        provider = require_address(provider_address, "provider address") if provider_address else None
        pagination = pagination or Pagination()
        pagination.validate()

        try:
            with self.database.session_scope() as session:
                conditions = [SearchEntry.content.contains(text.lower(), autoescape=True)]
                if provider:
                    open_grant = and_(
                        AccessGrant.provider_address == provider,
                        AccessGrant.is_active.is_(True),
                        AccessGrant.is_revoked.is_(False),
                    )
                    general_patients = select(AccessGrant.patient_address).where(
                        open_grant, AccessGrant.access_type == AccessScope.GENERAL.value
                    )
                    granted_records = select(AccessGrant.record_id).where(
                        open_grant,
                        AccessGrant.access_type == AccessScope.RECORD_SPECIFIC.value,
                        AccessGrant.record_id.isnot(None),
                    )
                    conditions.append(or_(
                        SearchEntry.patient_address.in_(general_patients),
                        SearchEntry.record_id.in_(granted_records),
                    ))

                total = (
                    session.query(func.count(SearchEntry.record_id))
                    .filter(and_(*conditions))
                    .scalar()
                )
                rows = (
                    self._ordered(
                        self._records_with_provider(session)
                        .join(SearchEntry, SearchEntry.record_id == IndexedRecord.record_id)
                        .filter(and_(*conditions)),
                        pagination,
                    )
                    .limit(pagination.limit)
                    .offset(pagination.offset)
                    .all()
                )
                return RecordPage(
                    records=[self._record_view(r, p) for r, p in rows],
                    total_count=int(total or 0),
                    page=pagination.page,
                    limit=pagination.limit,
                )
        except Exception as e:
            self.logger.error(f"Search for {text!r} failed: {e}", exc_info=True)
            return RecordPage(records=[], total_count=0, page=pagination.page, limit=pagination.limit)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _records_with_provider(self, session):
        return session.query(IndexedRecord, IndexedProvider).outerjoin(
            IndexedProvider, IndexedProvider.provider_address == IndexedRecord.provider_address
        )

    def _grants_with_provider(self, session):
        return session.query(AccessGrant, IndexedProvider).outerjoin(
            IndexedProvider, IndexedProvider.provider_address == AccessGrant.provider_address
        )

    def _ordered(self, query, pagination: Pagination):
        """Sort by the requested column (NULLs last), ties in ledger order."""
        direction = desc if pagination.sort_order == "desc" else asc
        column = IndexedRecord.record_date if pagination.sort_by == "recordDate" else IndexedRecord.created_at
        return query.order_by(
            nulls_last(direction(column)),
            direction(IndexedRecord.upload_block_number),
            direction(IndexedRecord.upload_log_index),
        )

    def _record_view(self, record: IndexedRecord, provider: Optional[IndexedProvider]) -> RecordView:
        metadata = record.record_metadata or {}
        return RecordView(
            record_id=record.record_id,
            patient_address=record.patient_address,
            title=metadata.get("title"),
            description=metadata.get("description"),
            category=record.category,
            record_date=record.record_date,
            provider_address=record.provider_address,
            provider_name=provider.name if provider else None,
            provider_specialty=provider.specialty if provider else None,
            file_size=metadata.get("fileSize"),
            mime_type=metadata.get("mimeType"),
            tags=metadata.get("tags"),
            uploaded_at=record.created_at,
            hydrated=record.is_hydrated,
        )

    def _group_grants(self, rows) -> List[ProviderAccess]:
        """Merge (grant, provider) rows, newest first, into one entry per provider."""
        grouped: Dict[str, ProviderAccess] = {}
        for grant, provider in rows:
            entry = grouped.get(grant.provider_address)
            if entry is None:
                entry = ProviderAccess(
                    provider_address=grant.provider_address,
                    access_type=grant.access_type,
                    name=provider.name if provider else None,
                    specialty=provider.specialty if provider else None,
                    granted_at=grant.created_at,
                    expiry_timestamp=grant.expiry_timestamp,
                    is_active=grant.is_active,
                )
                grouped[grant.provider_address] = entry
            if grant.record_id and grant.record_id not in entry.record_ids:
                entry.record_ids.append(grant.record_id)
            if grant.access_type == AccessScope.GENERAL.value:
                entry.access_type = AccessScope.GENERAL.value
            entry.is_active = entry.is_active or grant.is_active
        return list(grouped.values())
