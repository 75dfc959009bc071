"""
Indexer services.

- EventIngestor: checkpointed catch-up and live ingestion of ledger events
- EventProjector: idempotent projection of events into the indexed tables
- ContentHydrationCache: cache-aside resolution of IPFS content
- IndexingCoordinator: lifecycle and periodic sweeps
- IndexQueryService: read-only dashboard, listing and search views
"""

from .errors import (
    IndexerError,
    StoreConnectivityError,
    LedgerConnectivityError,
    LogQueryError,
    EventDecodeError,
    GatewayFetchError,
    ContentIntegrityError,
    QueryValidationError,
    CoordinatorStateError,
)
from .event_projector import EventProjector
from .event_ingestor import EventIngestor
from .content_gateway import ContentGateway
from .hydration_cache import ContentHydrationCache, HydrationItem, BatchResult
from .indexing_coordinator import IndexingCoordinator, CoordinatorState
from .query_service import IndexQueryService, Pagination, RecordFilter

__all__ = [
    # Errors
    "IndexerError",
    "StoreConnectivityError",
    "LedgerConnectivityError",
    "LogQueryError",
    "EventDecodeError",
    "GatewayFetchError",
    "ContentIntegrityError",
    "QueryValidationError",
    "CoordinatorStateError",
    # Ingestion
    "EventProjector",
    "EventIngestor",
    # Hydration
    "ContentGateway",
    "ContentHydrationCache",
    "HydrationItem",
    "BatchResult",
    # Lifecycle
    "IndexingCoordinator",
    "CoordinatorState",
    # Reads
    "IndexQueryService",
    "Pagination",
    "RecordFilter",
]
