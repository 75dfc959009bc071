"""
EventIngestor: checkpointed catch-up plus a live event channel.

Two paths feed the EventProjector:
- Catch-up: queries [checkpoint+1, min(checkpoint+batch, head)] for every
  watched contract, applies the logs in (block, log index) order and only
  then advances the durable checkpoint. Runs at start and on every poll tick.
- Live: a watcher thread polls the head and pushes new events into a bounded
  queue; a drain thread applies them. The live path never moves the
  checkpoint, so anything it drops or fails on is re-observed by catch-up.

Both paths apply events through the projector, which is idempotent on
(transaction hash, log index).
"""

import hashlib
import logging
import queue
import threading
from datetime import datetime
from typing import Callable, List, Optional

from medledger.db.postgres import Database, insert_for
from medledger.models import IngestCheckpoint
from medledger.services.contract_abis import ContractSpec
from medledger.services.errors import LedgerConnectivityError, LogQueryError
from medledger.services.event_projector import EventProjector
from medledger.services.ledger_events import LedgerEvent
from medledger.services.periodic import PeriodicTask


def watch_set_key(contracts: List[ContractSpec]) -> str:
    """Stable checkpoint key for a set of watched contract addresses."""
    addresses = sorted(spec.address.lower() for spec in contracts)
    return hashlib.sha256(",".join(addresses).encode("utf-8")).hexdigest()


class EventIngestor:
    """
    Keeps the store current with the ledger.

    Usage:
        ingestor = EventIngestor(database, ledger_client, contract_specs)
        ingestor.start()
        ...
        ingestor.stop()
    """

    def __init__(
        self,
        database: Database,
        ledger,
        contracts: List[ContractSpec],
        projector: Optional[EventProjector] = None,
        start_block: Optional[int] = None,
        start_block_lookback: int = 1000,
        batch_size: int = 1000,
        poll_interval: float = 30.0,
        live_poll_interval: float = 5.0,
        queue_size: int = 1000,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.database = database
        self.ledger = ledger
        self.contracts = list(contracts)
        self.projector = projector or EventProjector(database, clock=clock)
        self.start_block = start_block
        self.start_block_lookback = start_block_lookback
        self.batch_size = batch_size
        self.clock = clock
        self.watch_set = watch_set_key(self.contracts)
        self.logger = logging.getLogger("service.EventIngestor")

        self._checkpoint: Optional[int] = None
        self._live_cursor: Optional[int] = None
        self._catch_up_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._live_queue: "queue.Queue[LedgerEvent]" = queue.Queue(maxsize=queue_size)
        self._drain_thread: Optional[threading.Thread] = None
        self._poller = PeriodicTask("catch-up", poll_interval, self.catch_up)
        self._watcher = PeriodicTask("live-watch", live_poll_interval, self.watch_live)
        self._running = False

    @property
    def checkpoint(self) -> Optional[int]:
        """Last block whose events are durably applied."""
        return self._checkpoint

    @property
    def running(self) -> bool:
        return self._running

    @property
    def live_queue_depth(self) -> int:
        return self._live_queue.qsize()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Load (or initialize) the checkpoint, catch up, then start the
        polling, live watching and draining loops.

        Raises LedgerConnectivityError if the ledger head cannot be read.
        """
        if self._running:
            return
        self.ledger.ensure_connected()
        try:
            head = self.ledger.get_block_number()
        except Exception as e:
            raise LedgerConnectivityError(f"Cannot read ledger head: {e}") from e

        self._stop_event.clear()
        self._checkpoint = self._load_or_init_checkpoint(head)
        self.logger.info(
            f"Starting ingestion of {len(self.contracts)} contracts at checkpoint "
            f"{self._checkpoint} (head {head})"
        )

        self.catch_up()
        self._live_cursor = self._checkpoint

        self._drain_thread = threading.Thread(
            target=self._drain_loop, name="live-drain", daemon=True
        )
        self._drain_thread.start()
        self._poller.start()
        self._watcher.start()
        self._running = True

    def stop(self) -> None:
        """Stop all loops. Safe to call more than once."""
        if not self._running:
            return
        self._stop_event.set()
        self._watcher.stop()
        self._poller.stop()
        if self._drain_thread is not None:
            self._drain_thread.join(timeout=5.0)
            self._drain_thread = None
        self._running = False
        self.logger.info(f"Ingestion stopped at checkpoint {self._checkpoint}")

    # =========================================================================
    # Catch-up
    # =========================================================================

    def catch_up(self) -> Optional[int]:
        """
        Advance the checkpoint towards the current head in bounded batches.

        Stops early when a batch could not be fully covered; the next poll
        tick retries from the checkpoint. Returns the checkpoint.
        """
        with self._catch_up_lock:
            try:
                head = self.ledger.get_block_number()
                if self._checkpoint is None:
                    self._checkpoint = self._load_or_init_checkpoint(head)

                while not self._stop_event.is_set() and self._checkpoint < head:
                    from_block = self._checkpoint + 1
                    to_block = min(self._checkpoint + self.batch_size, head)
                    covered = self.process_batch(from_block, to_block)
                    if covered < to_block:
                        self.logger.warning(
                            f"Batch [{from_block}, {to_block}] incomplete; "
                            f"checkpoint held at {self._checkpoint}"
                        )
                        break
            except Exception as e:
                self.logger.error(f"Catch-up failed at checkpoint {self._checkpoint}: {e}")
            return self._checkpoint

    def process_batch(self, from_block: int, to_block: int) -> int:
        """
        Fetch and apply every watched contract's logs in [from_block, to_block].

        Returns the highest block now covered by the checkpoint: to_block if
        every contract's query succeeded, otherwise from_block - 1.
        """
        covered = to_block
        events: List[LedgerEvent] = []
        for spec in self.contracts:
            try:
                events.extend(self.ledger.fetch_events(spec, from_block, to_block))
            except LogQueryError as e:
                self.logger.warning(str(e))
                covered = min(covered, from_block - 1)

        events.sort(key=lambda event: event.log.sort_key)
        applied = 0
        for event in events:
            if self.projector.apply(event):
                applied += 1

        if events:
            self.logger.info(
                f"Blocks [{from_block}, {to_block}]: {len(events)} events, {applied} newly applied"
            )
        if self._checkpoint is None or covered > self._checkpoint:
            self._save_checkpoint(covered)
        return covered

    # =========================================================================
    # Live channel
    # =========================================================================

    def watch_live(self) -> int:
        """
        Push events newer than the live cursor into the live queue.

        Returns the number of events queued.
        """
        if self._live_cursor is None:
            self._live_cursor = self._checkpoint
        if self._live_cursor is None:
            return 0

        # Catch-up already covers everything up to the checkpoint
        cursor = max(self._live_cursor, self._checkpoint or 0)
        try:
            head = self.ledger.get_block_number()
        except Exception as e:
            self.logger.warning(f"Live watcher could not read head: {e}")
            return 0
        if head <= cursor:
            return 0

        from_block = cursor + 1
        to_block = min(cursor + self.batch_size, head)
        events: List[LedgerEvent] = []
        complete = True
        for spec in self.contracts:
            try:
                events.extend(self.ledger.fetch_events(spec, from_block, to_block))
            except LogQueryError as e:
                self.logger.warning(f"Live watcher: {e}")
                complete = False

        events.sort(key=lambda event: event.log.sort_key)
        queued = sum(1 for event in events if self.enqueue_live_event(event))
        self._live_cursor = to_block if complete else cursor
        return queued

    def enqueue_live_event(self, event: LedgerEvent) -> bool:
        """Non-blocking put; a full channel drops the event."""
        try:
            self._live_queue.put_nowait(event)
            return True
        except queue.Full:
            self.logger.warning(
                f"Live queue full, dropping {event.event_name} at "
                f"{event.log.transaction_hash}:{event.log.log_index}"
            )
            return False

    def drain_once(self) -> int:
        """Apply every event currently queued. Returns the number applied."""
        applied = 0
        while True:
            try:
                event = self._live_queue.get_nowait()
            except queue.Empty:
                return applied
            if self._apply_live(event):
                applied += 1

    def _drain_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._live_queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._apply_live(event)

    def _apply_live(self, event: LedgerEvent) -> bool:
        try:
            return self.projector.apply(event)
        except Exception as e:
            self.logger.error(
                f"Live event {event.event_name} at {event.log.transaction_hash}:"
                f"{event.log.log_index} failed: {e}"
            )
            return False

    # =========================================================================
    # Checkpoint store
    # =========================================================================

    def _load_or_init_checkpoint(self, head: int) -> int:
        with self.database.session_scope() as session:
            row = session.get(IngestCheckpoint, self.watch_set)
            if row is not None:
                return row.last_block

        if self.start_block is not None:
            initial = self.start_block - 1
            source = f"START_BLOCK {self.start_block}"
        else:
            initial = max(head - self.start_block_lookback, 0)
            source = f"head {head} minus {self.start_block_lookback}"
        self.logger.info(f"No checkpoint for watch set, starting after block {initial} ({source})")
        self._save_checkpoint(initial)
        return initial

    def _save_checkpoint(self, block: int) -> None:
        """Upsert that only ever moves the checkpoint forward."""
        with self.database.session_scope() as session:
            stmt = insert_for(session, IngestCheckpoint).values(
                watch_set=self.watch_set,
                last_block=block,
                updated_at=self.clock(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["watch_set"],
                set_={
                    "last_block": stmt.excluded.last_block,
                    "updated_at": stmt.excluded.updated_at,
                },
                where=IngestCheckpoint.last_block < stmt.excluded.last_block,
            )
            session.execute(stmt)
        if self._checkpoint is None or block > self._checkpoint:
            self._checkpoint = block
