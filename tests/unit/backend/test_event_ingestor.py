"""
Unit tests for EventIngestor.

Tests the ingestion guarantees:
- Start block selection (checkpoint, START_BLOCK, head minus lookback)
- Bounded catch-up batches and checkpoint advancement
- Checkpoint never passing a failed contract query
- Idempotent replay after a crash
- The bounded live channel
"""

import logging
from unittest.mock import MagicMock

import pytest

from medledger.models import IndexedPatient, IndexedProvider, IngestCheckpoint, RawEvent
from medledger.services.errors import LedgerConnectivityError
from medledger.services.event_ingestor import EventIngestor, watch_set_key
from medledger.services.event_projector import EventProjector

PATIENT = "0xabc0000000000000000000000000000000000001"
PROVIDER = "0xdef0000000000000000000000000000000000001"


def _make_ingestor(database, ledger, contracts, clock, **overrides):
    options = dict(
        projector=EventProjector(database, clock=clock),
        start_block=1,
        batch_size=10,
        poll_interval=3600,
        live_poll_interval=3600,
        queue_size=2,
        clock=clock,
    )
    options.update(overrides)
    return EventIngestor(database, ledger, contracts, **options)


@pytest.fixture
def ingestor(database, ledger, contracts, clock):
    return _make_ingestor(database, ledger, contracts, clock)


def _stored_checkpoint(database, contracts):
    with database.session_scope() as session:
        row = session.get(IngestCheckpoint, watch_set_key(contracts))
        return row.last_block if row else None


def _counters(database):
    with database.session_scope() as session:
        patient = session.get(IndexedPatient, PATIENT)
        provider = session.get(IndexedProvider, PROVIDER)
        return (
            patient.total_records if patient else None,
            patient.active_consents if patient else None,
            provider.active_access_grants if provider else None,
        )


def _history(events):
    return [
        events.patient_registered(PATIENT, "cidprofile", block=2),
        events.provider_registered(PROVIDER, "Dr. Grey", block=3),
        events.record_uploaded("rec-1", PATIENT, "cida", block=4, provider=PROVIDER),
        events.access_granted(PATIENT, PROVIDER, block=12),
        events.record_uploaded("rec-2", PATIENT, "cidb", block=15, log_index=1, provider=PROVIDER),
        events.access_revoked(PATIENT, PROVIDER, block=21),
        events.access_granted(PATIENT, PROVIDER, block=22, record_id="rec-2"),
    ]


# =============================================================================
# Start block selection
# =============================================================================

class TestStartBlock:
    """Tests for where ingestion begins."""

    def test_configured_start_block(self, ingestor, ledger):
        """With no checkpoint, START_BLOCK is the first block queried."""
        ledger.head = 5
        ingestor.catch_up()
        assert ledger.queries[0][1:] == (1, 5)

    def test_head_minus_lookback_fallback(self, database, ledger, contracts, clock):
        ledger.head = 100
        ingestor = _make_ingestor(
            database, ledger, contracts, clock, start_block=None, start_block_lookback=10
        )
        ingestor.catch_up()
        assert ledger.queries[0][1:] == (91, 100)

    def test_lookback_never_negative(self, database, ledger, contracts, clock):
        ledger.head = 3
        ingestor = _make_ingestor(
            database, ledger, contracts, clock, start_block=None, start_block_lookback=1000
        )
        ingestor.catch_up()
        assert ledger.queries[0][1:] == (1, 3)

    def test_existing_checkpoint_wins(self, database, ledger, contracts, clock, ingestor):
        """A restarted ingestor resumes after the durable checkpoint."""
        ledger.head = 30
        ingestor.catch_up()
        assert _stored_checkpoint(database, contracts) == 30

        ledger.head = 35
        ledger.queries.clear()
        restarted = _make_ingestor(database, ledger, contracts, clock, start_block=1)
        restarted.catch_up()
        assert ledger.queries[0][1:] == (31, 35)

    def test_start_fails_when_ledger_unreachable(self, ingestor, ledger):
        ledger.unreachable = True
        with pytest.raises(LedgerConnectivityError):
            ingestor.start()
        assert ingestor.running is False
        assert ledger.connect_checks == 1


# =============================================================================
# Catch-up
# =============================================================================

class TestCatchUp:
    """Tests for batched catch-up and checkpointing."""

    def test_batches_are_bounded(self, ingestor, ledger):
        ledger.head = 25
        ingestor.catch_up()

        ranges = sorted({q[1:] for q in ledger.queries})
        assert ranges == [(1, 10), (11, 20), (21, 25)]
        assert ingestor.checkpoint == 25

    def test_applies_events_and_counters(self, ingestor, ledger, events, database):
        ledger.add(*_history(events))
        ingestor.catch_up()

        assert _counters(database) == (2, 1, 1)
        with database.session_scope() as session:
            assert session.query(RawEvent).filter(RawEvent.processed.is_(True)).count() == 7

    def test_failed_contract_holds_checkpoint(self, ingestor, ledger, events, database, contracts):
        """One contract's query failing keeps the checkpoint before the batch."""
        ledger.add(*_history(events))
        ledger.failing.add("AccessControl")

        ingestor.catch_up()

        assert ingestor.checkpoint == 0
        assert _stored_checkpoint(database, contracts) == 0
        # Successful contracts were still applied
        assert _counters(database) == (1, 0, 0)

        ledger.failing.clear()
        ingestor.catch_up()

        assert ingestor.checkpoint == 22
        assert _counters(database) == (2, 1, 1)

    def test_replay_after_crash_is_idempotent(self, database, ledger, contracts, clock, events):
        """Re-applying a range whose checkpoint was lost changes nothing."""
        ledger.add(*_history(events))
        first = _make_ingestor(database, ledger, contracts, clock)
        first.catch_up()
        expected = _counters(database)

        with database.session_scope() as session:
            session.query(IngestCheckpoint).delete()

        replay = _make_ingestor(database, ledger, contracts, clock)
        replay.catch_up()

        assert _counters(database) == expected
        with database.session_scope() as session:
            assert session.query(RawEvent).count() == 7

    def test_checkpoint_never_moves_backward(self, ingestor, database, contracts):
        ingestor._save_checkpoint(10)
        ingestor._save_checkpoint(5)

        assert _stored_checkpoint(database, contracts) == 10
        assert ingestor.checkpoint == 10

    def test_head_failure_is_logged_not_raised(self, ingestor, ledger):
        """Transient RPC errors during a poll tick leave the checkpoint alone."""
        ledger.head = 5
        ingestor.catch_up()
        ledger.unreachable = True

        assert ingestor.catch_up() == 5


# =============================================================================
# Live channel
# =============================================================================

class TestLiveChannel:
    """Tests for the bounded live event queue."""

    def test_full_queue_drops_event(self, ingestor, events):
        assert ingestor.enqueue_live_event(events.patient_registered(PATIENT, "c1", block=1))
        assert ingestor.enqueue_live_event(events.patient_registered(PATIENT, "c2", block=2))
        assert ingestor.enqueue_live_event(events.patient_registered(PATIENT, "c3", block=3)) is False
        assert ingestor.live_queue_depth == 2

    def test_drain_applies_queued_events(self, ingestor, events, database):
        ingestor.enqueue_live_event(events.patient_registered(PATIENT, "cidprofile", block=1))

        assert ingestor.drain_once() == 1
        assert ingestor.live_queue_depth == 0
        with database.session_scope() as session:
            assert session.get(IndexedPatient, PATIENT).profile_cid == "cidprofile"

    def test_live_watch_does_not_move_checkpoint(self, ingestor, ledger, events, database):
        """Live events are applied but only catch-up advances the checkpoint."""
        ledger.head = 5
        ingestor.catch_up()
        ledger.add(events.patient_registered(PATIENT, "cidprofile", block=7))

        assert ingestor.watch_live() == 1
        assert ingestor.drain_once() == 1
        assert ingestor.checkpoint == 5

        # Catch-up later re-observes the same log without re-applying it
        ingestor.catch_up()
        assert ingestor.checkpoint == 7
        with database.session_scope() as session:
            assert session.query(RawEvent).count() == 1

    def test_start_and_stop(self, ingestor, ledger, events, database):
        ledger.add(events.patient_registered(PATIENT, "cidprofile", block=3))

        ingestor.start()
        try:
            assert ingestor.running is True
            assert ingestor.checkpoint == 3
        finally:
            ingestor.stop()
        ingestor.stop()

        assert ingestor.running is False

    def test_head_failure_keeps_live_cursor(self, ingestor, ledger, events):
        """An RPC drop skips the tick; the next tick covers the same range."""
        ledger.head = 5
        ingestor.catch_up()
        ledger.add(events.patient_registered(PATIENT, "cidprofile", block=7))
        ledger.unreachable = True

        assert ingestor.watch_live() == 0
        assert ingestor.live_queue_depth == 0

        ledger.unreachable = False
        ledger.queries.clear()
        assert ingestor.watch_live() == 1
        assert {q[1:] for q in ledger.queries} == {(6, 7)}

    def test_failed_contract_holds_live_cursor(self, ingestor, ledger, events, database):
        """Other contracts still deliver; the failed range is queried again."""
        ledger.head = 5
        ingestor.catch_up()
        ledger.add(
            events.patient_registered(PATIENT, "cidprofile", block=7),
            events.access_granted(PATIENT, PROVIDER, block=7, log_index=1),
        )
        ledger.failing.add("AccessControl")

        assert ingestor.watch_live() == 1
        assert ingestor.drain_once() == 1

        ledger.failing.clear()
        ledger.queries.clear()
        assert ingestor.watch_live() == 2
        assert {q[1:] for q in ledger.queries} == {(6, 7)}

        # The registration is already claimed; only the grant is new
        assert ingestor.drain_once() == 1
        assert _counters(database)[1] == 1

    def test_failing_projection_is_logged_not_raised(self, database, ledger, contracts, clock, events, caplog):
        projector = MagicMock()
        projector.apply.side_effect = RuntimeError("deadlock detected")
        ingestor = _make_ingestor(database, ledger, contracts, clock, projector=projector)
        ingestor.enqueue_live_event(events.patient_registered(PATIENT, "cidprofile", block=1))

        with caplog.at_level(logging.ERROR, logger="service.EventIngestor"):
            assert ingestor.drain_once() == 0

        assert ingestor.live_queue_depth == 0
        assert "deadlock detected" in caplog.text
