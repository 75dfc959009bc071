"""
IndexingCoordinator: lifecycle and scheduling of the indexing pipeline.

States: UNINITIALIZED -> INITIALIZED -> RUNNING -> STOPPED

- initialize(): verify the store (fatal on failure), construct the ingestor
  and hydration cache
- start(): start ingestion plus the hydration sweep and cache cleanup timers
- stop(): cancel timers and stop ingestion; idempotent

Hydration only ever happens in the sweep (or an explicit process_patient),
never inside event handling.
"""

import enum
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func

from medledger.db.postgres import Database
from medledger.models import IndexedPatient, IndexedProvider, IndexedRecord, RawEvent
from medledger.services.content_gateway import ContentGateway
from medledger.services.contract_abis import build_contract_specs
from medledger.services.errors import CoordinatorStateError, StoreConnectivityError
from medledger.services.event_ingestor import EventIngestor
from medledger.services.hydration_cache import (
    PATIENT_PROFILE,
    RECORD,
    BatchResult,
    ContentHydrationCache,
    HydrationItem,
)
from medledger.services.identifiers import require_address
from medledger.services.ledger_client import Web3LedgerClient
from medledger.services.periodic import PeriodicTask


class CoordinatorState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"


class IndexingCoordinator:
    """
    Owns the ingestor, the hydration cache and their timers.

    Usage:
        coordinator = IndexingCoordinator.from_config(config)
        coordinator.initialize()
        coordinator.start()
        print(coordinator.status())
        coordinator.stop()
    """

    def __init__(
        self,
        database: Database,
        ingestor_factory: Callable[[Database], EventIngestor],
        cache_factory: Callable[[Database], ContentHydrationCache],
        process_interval: float = 60.0,
        hydration_batch_size: int = 50,
        cleanup_interval: float = 24 * 60 * 60.0,
    ):
        self.database = database
        self._ingestor_factory = ingestor_factory
        self._cache_factory = cache_factory
        self.process_interval = process_interval
        self.hydration_batch_size = hydration_batch_size
        self.cleanup_interval = cleanup_interval
        self.logger = logging.getLogger("service.IndexingCoordinator")

        self.ingestor: Optional[EventIngestor] = None
        self.cache: Optional[ContentHydrationCache] = None
        self._state = CoordinatorState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._hydration_task: Optional[PeriodicTask] = None
        self._cleanup_task: Optional[PeriodicTask] = None

    @classmethod
    def from_config(cls, cfg) -> "IndexingCoordinator":
        """Wire every collaborator from a Config object."""
        database = Database(cfg.get_database_url(), echo=cfg.SQL_ECHO)
        contracts = build_contract_specs(cfg.get_contract_addresses(), cfg.CONTRACT_ABI_DIR or None)

        def make_ingestor(db: Database) -> EventIngestor:
            ledger = Web3LedgerClient(cfg.RPC_URL, contracts, timeout=cfg.RPC_TIMEOUT)
            return EventIngestor(
                db,
                ledger,
                contracts,
                start_block=cfg.get_start_block(),
                start_block_lookback=cfg.START_BLOCK_LOOKBACK,
                batch_size=cfg.EVENT_BATCH_SIZE,
                poll_interval=cfg.POLL_INTERVAL,
                live_poll_interval=cfg.LIVE_POLL_INTERVAL,
                queue_size=cfg.LIVE_QUEUE_SIZE,
            )

        def make_cache(db: Database) -> ContentHydrationCache:
            gateway = ContentGateway(cfg.IPFS_GATEWAY_URL, timeout=cfg.IPFS_TIMEOUT)
            return ContentHydrationCache(
                db,
                gateway,
                ttl_hours=cfg.IPFS_CACHE_EXPIRY,
                retry_attempts=cfg.IPFS_RETRY_ATTEMPTS,
                retry_base_delay=cfg.IPFS_RETRY_BASE_DELAY,
                chunk_size=cfg.HYDRATION_CHUNK_SIZE,
                chunk_pause=cfg.HYDRATION_CHUNK_PAUSE,
            )

        return cls(
            database,
            ingestor_factory=make_ingestor,
            cache_factory=make_cache,
            process_interval=cfg.PROCESS_INTERVAL,
            hydration_batch_size=cfg.HYDRATION_BATCH_SIZE,
            cleanup_interval=cfg.CLEANUP_INTERVAL,
        )

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is CoordinatorState.RUNNING

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> None:
        """
        Verify store connectivity and build the pipeline.

        Raises StoreConnectivityError if the store cannot be reached.
        """
        with self._state_lock:
            if self._state is not CoordinatorState.UNINITIALIZED:
                raise CoordinatorStateError(f"initialize() called in state {self._state.value}")
            try:
                self.database.ping()
            except Exception as e:
                raise StoreConnectivityError(f"Store unreachable: {e}") from e

            self.ingestor = self._ingestor_factory(self.database)
            self.cache = self._cache_factory(self.database)
            self._state = CoordinatorState.INITIALIZED
            self.logger.info("Indexing pipeline initialized")

    def start(self) -> None:
        """Start ingestion, the hydration sweep and the cleanup sweep."""
        with self._state_lock:
            if self._state is CoordinatorState.RUNNING:
                return
            if self._state is not CoordinatorState.INITIALIZED:
                raise CoordinatorStateError(f"start() called in state {self._state.value}")

            self.ingestor.start()
            self._hydration_task = PeriodicTask(
                "hydration-sweep", self.process_interval, self.run_hydration_sweep,
                run_immediately=True,
            )
            self._cleanup_task = PeriodicTask("cache-cleanup", self.cleanup_interval, self.cleanup)
            self._hydration_task.start()
            self._cleanup_task.start()
            self._state = CoordinatorState.RUNNING
            self.logger.info(
                f"Indexing pipeline running (sweep every {self.process_interval}s, "
                f"cleanup every {self.cleanup_interval}s)"
            )

    def stop(self) -> None:
        """Cancel timers and stop ingestion. No-op unless running."""
        with self._state_lock:
            if self._state is not CoordinatorState.RUNNING:
                return
            for task in (self._hydration_task, self._cleanup_task):
                if task is not None:
                    task.stop()
            self._hydration_task = None
            self._cleanup_task = None
            self.ingestor.stop()
            self._state = CoordinatorState.STOPPED
            self.logger.info("Indexing pipeline stopped")

    # =========================================================================
    # Periodic work
    # =========================================================================

    def pending_hydration_items(self) -> List[HydrationItem]:
        """
        Patients and records with a content reference but nothing resolved yet.

        Never-attempted rows come first, then the least recently attempted,
        so content that keeps failing cannot pin the batch window.
        """
        with self.database.session_scope() as session:
            patients = (
                session.query(IndexedPatient.patient_address, IndexedPatient.profile_cid)
                .filter(
                    IndexedPatient.profile_cid.isnot(None),
                    IndexedPatient.profile_metadata.is_(None),
                )
                .order_by(
                    IndexedPatient.profile_hydration_attempted_at.asc().nulls_first(),
                    IndexedPatient.created_at,
                )
                .limit(self.hydration_batch_size)
                .all()
            )
            records = (
                session.query(IndexedRecord.record_id, IndexedRecord.record_cid)
                .filter(IndexedRecord.record_metadata.is_(None))
                .order_by(
                    IndexedRecord.hydration_attempted_at.asc().nulls_first(),
                    IndexedRecord.upload_block_number,
                    IndexedRecord.upload_log_index,
                )
                .limit(self.hydration_batch_size)
                .all()
            )
        items = [HydrationItem(PATIENT_PROFILE, address, cid) for address, cid in patients]
        items.extend(HydrationItem(RECORD, record_id, cid) for record_id, cid in records)
        return items

    def run_hydration_sweep(self) -> BatchResult:
        """Feed every pending patient profile and record to the hydration cache."""
        self._require_cache()
        with self._sweep_lock:
            items = self.pending_hydration_items()
            if not items:
                self.logger.debug("Hydration sweep: nothing pending")
                return BatchResult()
            result = self.cache.hydrate_batch(items)
            self.logger.info(
                f"Hydration sweep: {result.succeeded}/{result.attempted} hydrated, "
                f"{result.failed} left for the next sweep"
            )
            return result

    def process_patient(self, patient_address: str) -> BatchResult:
        """Hydrate one patient's profile and unhydrated records right away."""
        self._require_cache()
        address = require_address(patient_address, "patient address")
        with self.database.session_scope() as session:
            patient = session.get(IndexedPatient, address)
            records = (
                session.query(IndexedRecord.record_id, IndexedRecord.record_cid)
                .filter(
                    IndexedRecord.patient_address == address,
                    IndexedRecord.record_metadata.is_(None),
                )
                .all()
            )
            items = []
            if patient is not None and patient.profile_cid and patient.profile_metadata is None:
                items.append(HydrationItem(PATIENT_PROFILE, address, patient.profile_cid))
            items.extend(HydrationItem(RECORD, record_id, cid) for record_id, cid in records)

        result = self.cache.hydrate_batch(items)
        self.logger.info(f"Processed patient {address}: {result.succeeded}/{result.attempted} hydrated")
        return result

    def cleanup(self) -> int:
        """Evict expired cache entries now."""
        self._require_cache()
        return self.cache.evict_expired()

    def _require_cache(self) -> None:
        if self.cache is None:
            raise CoordinatorStateError("Coordinator is not initialized")

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        """Running flag, table counts, pending work and cache statistics."""
        with self.database.session_scope() as session:
            counts = {
                "total_patients": session.query(func.count(IndexedPatient.patient_address)).scalar(),
                "total_providers": session.query(func.count(IndexedProvider.provider_address)).scalar(),
                "total_records": session.query(func.count(IndexedRecord.record_id)).scalar(),
                "unprocessed_events": session.query(func.count(RawEvent.id))
                .filter(RawEvent.processed.is_(False))
                .scalar(),
                "pending_hydration": session.query(func.count(IndexedRecord.record_id))
                .filter(IndexedRecord.record_metadata.is_(None))
                .scalar(),
            }

        return {
            "state": self._state.value,
            "is_running": self.is_running,
            "checkpoint": self.ingestor.checkpoint if self.ingestor else None,
            **{name: int(value or 0) for name, value in counts.items()},
            "cache": self.cache.stats() if self.cache else None,
        }
