"""
Error types shared by the indexer services.
"""


class IndexerError(Exception):
    """Base class for indexer failures."""


class StoreConnectivityError(IndexerError):
    """Relational store unreachable at startup. Fatal."""


class LedgerConnectivityError(IndexerError):
    """Ledger RPC unreachable at startup. Fatal."""


class LogQueryError(IndexerError):
    """A log query for one contract failed; the batch must not advance past it."""

    def __init__(self, contract_name: str, from_block: int, to_block: int, reason: str):
        self.contract_name = contract_name
        self.from_block = from_block
        self.to_block = to_block
        super().__init__(
            f"log query failed for {contract_name} [{from_block}, {to_block}]: {reason}"
        )


class EventDecodeError(IndexerError):
    """A log could not be mapped onto a typed ledger event."""


class GatewayFetchError(IndexerError):
    """Content could not be fetched from the gateway (unreachable, HTTP error)."""


class ContentIntegrityError(IndexerError):
    """Content was fetched but is corrupt or has the wrong shape."""


class QueryValidationError(IndexerError, ValueError):
    """Malformed identifier, filter or pagination input."""


class CoordinatorStateError(IndexerError):
    """Lifecycle method called in the wrong state."""
