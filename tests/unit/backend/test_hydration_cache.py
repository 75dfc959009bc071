"""
Unit tests for ContentHydrationCache.

Tests the cache-aside behaviour for:
- TTL expiry and access accounting
- Retry with exponential backoff
- Integrity failures vs fetch failures
- All-or-nothing record hydration and search entries
- Chunked best-effort batches
- Eviction and statistics
"""

from datetime import datetime

import pytest

from medledger.models import ContentCacheEntry, IndexedPatient, IndexedRecord, SearchEntry
from medledger.services.event_projector import EventProjector
from medledger.services.hydration_cache import (
    PATIENT_PROFILE,
    RECORD,
    ContentHydrationCache,
    HydrationItem,
    extract_searchable_text,
    parse_record_date,
)

PATIENT = "0xabc0000000000000000000000000000000000001"

LAB_REPORT = {
    "title": "Lab Report",
    "description": "Complete Blood Count",
    "category": "lab",
    "recordDate": "2026-02-10T08:30:00Z",
    "tags": ["Blood", "CBC"],
    "keywords": ["hemoglobin"],
    "content": "All values   within range",
    "fileSize": 2048,
    "mimeType": "application/pdf",
}


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def cache(database, gateway, clock, sleeps):
    return ContentHydrationCache(
        database,
        gateway,
        ttl_hours=24,
        retry_attempts=3,
        retry_base_delay=1.0,
        chunk_size=2,
        chunk_pause=0.5,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def projector(database, clock):
    return EventProjector(database, clock=clock)


def _cache_entry(database, cid):
    with database.session_scope() as session:
        return session.get(ContentCacheEntry, cid)


# =============================================================================
# Text helpers
# =============================================================================

class TestTextHelpers:
    """Tests for search text and date extraction."""

    def test_searchable_text_fields_and_order(self):
        text = extract_searchable_text(LAB_REPORT)
        assert text == (
            "lab report complete blood count lab blood cbc hemoglobin all values within range"
        )

    def test_searchable_text_skips_missing_fields(self):
        assert extract_searchable_text({"title": "X-Ray"}) == "x-ray"
        assert extract_searchable_text({}) == ""

    def test_parse_iso_with_zulu(self):
        assert parse_record_date("2026-02-10T08:30:00Z") == datetime(2026, 2, 10, 8, 30)

    def test_parse_plain_date(self):
        assert parse_record_date("2026-02-10") == datetime(2026, 2, 10)

    def test_parse_unix_millis(self):
        assert parse_record_date(1767225600000) == datetime(2026, 1, 1)

    def test_parse_garbage_is_none(self):
        assert parse_record_date("last tuesday") is None
        assert parse_record_date(None) is None


# =============================================================================
# Resolution
# =============================================================================

class TestResolve:
    """Tests for cache-aside resolve()."""

    def test_miss_then_hit(self, cache, gateway, database):
        gateway.documents["cida"] = LAB_REPORT

        assert cache.resolve("cidA") == LAB_REPORT
        assert cache.resolve("ipfs://cida") == LAB_REPORT

        assert gateway.calls == ["cida"]
        assert _cache_entry(database, "cida").access_count == 2

    def test_read_before_expiry_is_cached(self, cache, gateway, clock):
        """Read at T + TTL - 1s returns the cached payload."""
        gateway.documents["cida"] = LAB_REPORT
        cache.resolve("cida")

        clock.advance(hours=24, seconds=-1)
        cache.resolve("cida")

        assert len(gateway.calls) == 1

    def test_read_after_expiry_refetches(self, cache, gateway, clock, database):
        """Read at T + TTL + 1s goes back to the gateway."""
        gateway.documents["cida"] = LAB_REPORT
        cache.resolve("cida")

        clock.advance(hours=24, seconds=1)
        cache.resolve("cida")

        assert len(gateway.calls) == 2
        entry = _cache_entry(database, "cida")
        assert entry.access_count == 1
        assert entry.fetched_at == clock()

    def test_retries_with_exponential_backoff(self, cache, gateway, sleeps):
        gateway.documents["cida"] = LAB_REPORT
        gateway.transient_failures["cida"] = 2

        assert cache.resolve("cida") == LAB_REPORT
        assert sleeps == [1.0, 2.0]
        assert len(gateway.calls) == 3

    def test_exhausted_retries_return_none(self, cache, gateway, sleeps, database):
        """Giving up is not an error; nothing is cached."""
        gateway.transient_failures["cida"] = 10

        assert cache.resolve("cida") is None
        assert len(gateway.calls) == 3
        assert sleeps == [1.0, 2.0]
        assert _cache_entry(database, "cida") is None
        assert cache.stats()["fetch_failures"] == 1

    def test_integrity_failure_is_not_retried(self, cache, gateway, sleeps):
        gateway.corrupt.add("cida")

        assert cache.resolve("cida") is None
        assert len(gateway.calls) == 1
        assert sleeps == []
        stats = cache.stats()
        assert stats["integrity_failures"] == 1
        assert stats["fetch_failures"] == 0


# =============================================================================
# Hydration
# =============================================================================

class TestHydration:
    """Tests for writing resolved content onto rows."""

    def test_hydrate_record_writes_all_fields(self, cache, gateway, projector, database, events):
        projector.apply(events.record_uploaded("rec-1", PATIENT, "cida", block=1))
        gateway.documents["cida"] = LAB_REPORT

        assert cache.hydrate_record("rec-1", "cida") is True

        with database.session_scope() as session:
            record = session.get(IndexedRecord, "rec-1")
            entry = session.get(SearchEntry, "rec-1")
        assert record.record_metadata == LAB_REPORT
        assert record.category == "lab"
        assert record.record_date == datetime(2026, 2, 10, 8, 30)
        assert record.searchable_text.startswith("lab report")
        assert record.hydrated_at is not None
        assert entry.title == "Lab Report"
        assert entry.patient_address == PATIENT
        assert entry.content == record.searchable_text
        assert entry.keywords == ["hemoglobin"]

    def test_record_without_date_or_category(self, cache, gateway, projector, database, events, clock):
        """Hydrated records always carry a category and a date."""
        projector.apply(events.record_uploaded("rec-1", PATIENT, "cida", block=1))
        gateway.documents["cida"] = {"title": "Note"}

        cache.hydrate_record("rec-1", "cida")

        with database.session_scope() as session:
            record = session.get(IndexedRecord, "rec-1")
        assert record.category == "other"
        assert record.record_date == record.created_at

    def test_stale_reference_is_not_written(self, cache, gateway, projector, database, events):
        """Content for a superseded CID never lands on the record."""
        projector.apply(events.record_uploaded("rec-1", PATIENT, "cidb", block=1))
        gateway.documents["cida"] = LAB_REPORT

        assert cache.hydrate_record("rec-1", "cida") is False
        with database.session_scope() as session:
            assert session.get(IndexedRecord, "rec-1").record_metadata is None
            assert session.get(SearchEntry, "rec-1") is None

    def test_hydrate_patient_profile(self, cache, gateway, projector, database, events):
        projector.apply(events.patient_registered(PATIENT, "cidprofile", block=1))
        gateway.documents["cidprofile"] = {"firstName": "Ada", "lastName": "Lovelace"}

        assert cache.hydrate_patient_profile(PATIENT, "cidprofile") is True

        with database.session_scope() as session:
            patient = session.get(IndexedPatient, PATIENT)
        assert patient.display_name == "Ada Lovelace"
        assert patient.profile_hydrated_at is not None

    def test_unresolved_profile_returns_false(self, cache, projector, database, events, clock):
        projector.apply(events.patient_registered(PATIENT, "cidprofile", block=1))
        assert cache.hydrate_patient_profile(PATIENT, "cidprofile") is False

        with database.session_scope() as session:
            patient = session.get(IndexedPatient, PATIENT)
        assert patient.profile_hydration_attempts == 1
        assert patient.profile_hydration_attempted_at == clock()

    def test_unresolved_record_counts_attempts(self, cache, gateway, projector, database, events):
        projector.apply(events.record_uploaded("rec-1", PATIENT, "cida", block=1))
        gateway.corrupt.add("cida")

        cache.hydrate_record("rec-1", "cida")
        cache.hydrate_record("rec-1", "cida")

        with database.session_scope() as session:
            record = session.get(IndexedRecord, "rec-1")
        assert record.hydration_attempts == 2
        assert record.hydration_attempted_at is not None
        assert record.record_metadata is None

    def test_string_keywords_become_a_list(self, cache, gateway, projector, database, events):
        projector.apply(events.record_uploaded("rec-1", PATIENT, "cida", block=1))
        gateway.documents["cida"] = {"title": "Echo", "keywords": "cardio"}

        assert cache.hydrate_record("rec-1", "cida") is True

        with database.session_scope() as session:
            entry = session.get(SearchEntry, "rec-1")
        assert entry.keywords == ["cardio"]


# =============================================================================
# Batches
# =============================================================================

class TestHydrateBatch:
    """Tests for chunked, best-effort batches."""

    def test_one_failure_does_not_block_siblings(self, cache, gateway, projector, events, sleeps):
        for i, cid in enumerate(["cid1", "cid2", "cid3"]):
            projector.apply(events.record_uploaded(f"rec-{i}", PATIENT, cid, block=i + 1))
        gateway.documents["cid1"] = {"title": "One"}
        gateway.documents["cid3"] = {"title": "Three"}

        result = cache.hydrate_batch([
            HydrationItem(RECORD, "rec-0", "cid1"),
            HydrationItem(RECORD, "rec-1", "cid2"),
            HydrationItem(RECORD, "rec-2", "cid3"),
        ])

        assert result.attempted == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert list(result.errors) == ["rec-1"]
        # Three items in chunks of two: one pause between chunks
        assert sleeps.count(0.5) == 1

    def test_unexpected_error_is_captured(self, cache, gateway, projector, events):
        projector.apply(events.patient_registered(PATIENT, "cidprofile", block=1))
        gateway.documents["cidprofile"] = {"firstName": "Ada"}

        result = cache.hydrate_batch([
            HydrationItem("unknown-kind", "x", "cidx"),
            HydrationItem(PATIENT_PROFILE, PATIENT, "cidprofile"),
        ])

        assert result.succeeded == 1
        assert "Unknown hydration kind" in result.errors["x"]

    def test_empty_batch(self, cache, sleeps):
        result = cache.hydrate_batch([])
        assert result.attempted == 0
        assert sleeps == []


# =============================================================================
# Maintenance
# =============================================================================

class TestMaintenance:
    """Tests for eviction and statistics."""

    def test_evict_expired(self, cache, gateway, clock, database):
        gateway.documents["cida"] = {"title": "A"}
        gateway.documents["cidb"] = {"title": "B"}
        cache.resolve("cida")
        clock.advance(hours=12)
        cache.resolve("cidb")

        clock.advance(hours=13)
        assert cache.evict_expired() == 1

        assert _cache_entry(database, "cida") is None
        assert _cache_entry(database, "cidb") is not None

    def test_stats(self, cache, gateway):
        gateway.documents["cida"] = {"title": "A"}
        gateway.documents["cidb"] = {"title": "B"}
        cache.resolve("cida")
        cache.resolve("cida")
        cache.resolve("cida")
        cache.resolve("cidb")

        stats = cache.stats()
        assert stats["entry_count"] == 2
        assert stats["avg_access_count"] == 2.0
        assert stats["hits"] == 2
        assert stats["misses"] == 2
