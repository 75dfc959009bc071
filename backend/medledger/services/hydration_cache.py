"""
ContentHydrationCache: cache-aside resolution of content references.

resolve(cid):
    1. Cached and not expired  -> bump access accounting, return payload
    2. Missing or expired      -> drop stale entry, fetch through the gateway
                                  with exponential backoff, store with TTL

Hydration writes the resolved payload into patient/record rows. A record's
resolved columns and its search entry are written in one transaction, so a
reader sees either none of them or all of them.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func

from medledger.db.postgres import Database, insert_for
from medledger.models import ContentCacheEntry, IndexedPatient, IndexedRecord, SearchEntry
from medledger.services.content_gateway import ContentGateway
from medledger.services.errors import ContentIntegrityError, GatewayFetchError
from medledger.services.identifiers import normalize_cid

# Category column width; also the fallback for payloads without one
MAX_CATEGORY_LENGTH = 50
DEFAULT_CATEGORY = "other"

PATIENT_PROFILE = "patient"
RECORD = "record"


def extract_searchable_text(metadata: Dict[str, Any]) -> str:
    """
    Lower-cased search blob from title, description, category, tags,
    keywords and content.
    """
    parts: List[str] = []
    for key in ("title", "description", "category"):
        value = metadata.get(key)
        if value:
            parts.append(str(value))
    for key in ("tags", "keywords"):
        values = metadata.get(key) or []
        if isinstance(values, str):
            values = [values]
        parts.extend(str(v) for v in values if v)
    if metadata.get("content"):
        parts.append(str(metadata["content"]))
    return " ".join(" ".join(parts).split()).lower()


def parse_record_date(value: Any) -> Optional[datetime]:
    """recordDate as naive UTC; accepts ISO-8601 strings and unix seconds/millis."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class HydrationItem:
    """One pending hydration: a patient profile or a record."""
    kind: str  # PATIENT_PROFILE or RECORD
    key: str  # patient address or record id
    cid: str


@dataclass
class BatchResult:
    """Outcome of hydrate_batch."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": dict(self.errors),
        }


class ContentHydrationCache:
    """
    Resolves CIDs through a persistent cache and hydrates indexed rows.

    Usage:
        cache = ContentHydrationCache(database, ContentGateway("https://ipfs.io"))
        metadata = cache.resolve("bafy...")
        cache.hydrate_record("rec-1", "bafy...")
    """

    def __init__(
        self,
        database: Database,
        gateway: ContentGateway,
        ttl_hours: float = 24,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        chunk_size: int = 10,
        chunk_pause: float = 1.0,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.database = database
        self.gateway = gateway
        self.ttl = timedelta(hours=ttl_hours)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self.chunk_size = max(1, chunk_size)
        self.chunk_pause = chunk_pause
        self.clock = clock
        self.sleep = sleep
        self.logger = logging.getLogger("service.ContentHydrationCache")

        self._counter_lock = threading.Lock()
        self._counters = {
            "hits": 0,
            "misses": 0,
            "fetch_failures": 0,
            "integrity_failures": 0,
        }

    def _count(self, name: str) -> None:
        with self._counter_lock:
            self._counters[name] += 1

    # =========================================================================
    # Cache-aside resolution
    # =========================================================================

    def resolve(self, cid: str) -> Optional[Dict[str, Any]]:
        """
        Payload for a CID, or None if it cannot be resolved right now.

        Never raises for gateway problems; the caller retries on a later sweep.
        """
        cid = normalize_cid(cid)
        if not cid:
            return None

        now = self.clock()
        with self.database.session_scope() as session:
            entry = session.get(ContentCacheEntry, cid)
            if entry is not None and now < entry.expires_at:
                session.query(ContentCacheEntry).filter(ContentCacheEntry.cid == cid).update(
                    {
                        ContentCacheEntry.access_count: ContentCacheEntry.access_count + 1,
                        ContentCacheEntry.last_accessed: now,
                    },
                    synchronize_session=False,
                )
                self._count("hits")
                self.logger.debug(f"Cache hit: {cid}")
                return entry.payload
            if entry is not None:
                session.delete(entry)
                self.logger.debug(f"Cache entry expired: {cid}")

        self._count("misses")
        payload = self._fetch_with_retry(cid)
        if payload is None:
            return None

        fetched_at = self.clock()
        with self.database.session_scope() as session:
            stmt = insert_for(session, ContentCacheEntry).values(
                cid=cid,
                payload=payload,
                fetched_at=fetched_at,
                expires_at=fetched_at + self.ttl,
                last_accessed=fetched_at,
                access_count=1,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["cid"],
                set_={
                    "payload": stmt.excluded.payload,
                    "fetched_at": stmt.excluded.fetched_at,
                    "expires_at": stmt.excluded.expires_at,
                    "last_accessed": stmt.excluded.last_accessed,
                    "access_count": stmt.excluded.access_count,
                },
            )
            session.execute(stmt)
        self.logger.debug(f"Cached {cid} until {fetched_at + self.ttl}")
        return payload

    def _fetch_with_retry(self, cid: str) -> Optional[Dict[str, Any]]:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self.gateway.fetch(cid)
            except ContentIntegrityError as e:
                # Refetching immutable content yields the same bytes
                self._count("integrity_failures")
                self.logger.warning(f"Integrity failure for {cid}: {e}")
                return None
            except GatewayFetchError as e:
                self.logger.warning(
                    f"Fetch attempt {attempt}/{self.retry_attempts} for {cid} failed: {e}"
                )
                if attempt < self.retry_attempts:
                    self.sleep(self.retry_base_delay * (2 ** (attempt - 1)))

        self._count("fetch_failures")
        self.logger.error(f"Giving up on {cid} after {self.retry_attempts} attempts")
        return None

    # =========================================================================
    # Hydration
    # =========================================================================

    def hydrate_patient_profile(self, patient_address: str, cid: str) -> bool:
        """Write the resolved profile onto the patient row. False if unresolved or stale."""
        cid = normalize_cid(cid)
        metadata = self.resolve(cid)
        if metadata is None:
            self._note_failed_attempt(
                IndexedPatient,
                [IndexedPatient.patient_address == patient_address.lower(), IndexedPatient.profile_cid == cid],
                IndexedPatient.profile_hydration_attempts,
                IndexedPatient.profile_hydration_attempted_at,
            )
            return False

        with self.database.session_scope() as session:
            updated = session.query(IndexedPatient).filter(
                IndexedPatient.patient_address == patient_address.lower(),
                IndexedPatient.profile_cid == cid,
            ).update(
                {
                    IndexedPatient.profile_metadata: metadata,
                    IndexedPatient.profile_hydrated_at: self.clock(),
                },
                synchronize_session=False,
            )

        if not updated:
            self.logger.debug(f"Patient {patient_address} no longer references {cid}")
            return False
        self.logger.debug(f"Hydrated profile of {patient_address}")
        return True

    def hydrate_record(self, record_id: str, cid: str) -> bool:
        """
        Write resolved metadata, category, date and search text onto the
        record and refresh its search entry, all in one transaction.
        """
        cid = normalize_cid(cid)
        metadata = self.resolve(cid)
        if metadata is None:
            self._note_failed_attempt(
                IndexedRecord,
                [IndexedRecord.record_id == record_id, IndexedRecord.record_cid == cid],
                IndexedRecord.hydration_attempts,
                IndexedRecord.hydration_attempted_at,
            )
            return False

        searchable_text = extract_searchable_text(metadata)
        category = str(metadata.get("category") or DEFAULT_CATEGORY)[:MAX_CATEGORY_LENGTH]
        keywords = metadata.get("keywords") or []
        if isinstance(keywords, str):
            keywords = [keywords]
        now = self.clock()

        with self.database.session_scope() as session:
            record = (
                session.query(IndexedRecord)
                .filter(IndexedRecord.record_id == record_id, IndexedRecord.record_cid == cid)
                .with_for_update()
                .one_or_none()
            )
            if record is None:
                self.logger.debug(f"Record {record_id} no longer references {cid}")
                return False

            record_date = parse_record_date(metadata.get("recordDate")) or record.created_at
            session.query(IndexedRecord).filter(IndexedRecord.record_id == record_id).update(
                {
                    IndexedRecord.record_metadata: metadata,
                    IndexedRecord.category: category,
                    IndexedRecord.record_date: record_date,
                    IndexedRecord.searchable_text: searchable_text,
                    IndexedRecord.hydrated_at: now,
                    IndexedRecord.updated_at: now,
                },
                synchronize_session=False,
            )

            stmt = insert_for(session, SearchEntry).values(
                record_id=record_id,
                patient_address=record.patient_address,
                title=metadata.get("title"),
                content=searchable_text,
                keywords=keywords,
                category=category,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["record_id"],
                set_={
                    "patient_address": stmt.excluded.patient_address,
                    "title": stmt.excluded.title,
                    "content": stmt.excluded.content,
                    "keywords": stmt.excluded.keywords,
                    "category": stmt.excluded.category,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            session.execute(stmt)

        self.logger.debug(f"Hydrated record {record_id}")
        return True

    def _note_failed_attempt(self, model, criteria, attempts_column, attempted_at_column) -> None:
        """Stamp an unresolved fetch on the row so later sweeps rotate past it."""
        with self.database.session_scope() as session:
            session.query(model).filter(*criteria).update(
                {
                    attempts_column: attempts_column + 1,
                    attempted_at_column: self.clock(),
                },
                synchronize_session=False,
            )

    def hydrate_batch(self, items: List[HydrationItem]) -> BatchResult:
        """
        Hydrate items in chunks with a pause between chunks.

        Best effort: a failing item is recorded and its siblings still run.
        """
        result = BatchResult()
        for start in range(0, len(items), self.chunk_size):
            if start > 0 and self.chunk_pause > 0:
                self.sleep(self.chunk_pause)
            for item in items[start:start + self.chunk_size]:
                result.attempted += 1
                try:
                    if item.kind == PATIENT_PROFILE:
                        ok = self.hydrate_patient_profile(item.key, item.cid)
                    elif item.kind == RECORD:
                        ok = self.hydrate_record(item.key, item.cid)
                    else:
                        raise ValueError(f"Unknown hydration kind {item.kind!r}")
                except Exception as e:
                    ok = False
                    result.errors[item.key] = str(e)
                    self.logger.error(f"Hydration of {item.kind} {item.key} failed: {e}")
                if ok:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    result.errors.setdefault(item.key, f"content {item.cid} unresolved")
        return result

    # =========================================================================
    # Maintenance
    # =========================================================================

    def evict_expired(self) -> int:
        """Delete every entry whose expiry has passed. Returns the count."""
        now = self.clock()
        with self.database.session_scope() as session:
            deleted = session.query(ContentCacheEntry).filter(
                ContentCacheEntry.expires_at < now
            ).delete(synchronize_session=False)
        if deleted:
            self.logger.info(f"Evicted {deleted} expired cache entries")
        return deleted

    def stats(self) -> Dict[str, Any]:
        with self.database.session_scope() as session:
            entry_count, avg_access = session.query(
                func.count(ContentCacheEntry.cid),
                func.avg(ContentCacheEntry.access_count),
            ).one()
        with self._counter_lock:
            counters = dict(self._counters)
        return {
            "entry_count": int(entry_count or 0),
            "avg_access_count": round(float(avg_access or 0), 2),
            **counters,
        }
