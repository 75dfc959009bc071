"""
Indexer process entry point.

Builds the indexing pipeline from environment config, starts it and keeps
logging its status until SIGINT/SIGTERM.
"""

import logging
import signal
import sys
import threading

from medledger.config import config
from medledger.services import IndexingCoordinator, IndexerError
from medledger.services.periodic import PeriodicTask


def main() -> int:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger = logging.getLogger("medledger")

    coordinator = IndexingCoordinator.from_config(config)
    try:
        coordinator.initialize()
        coordinator.start()
    except IndexerError as e:
        logger.critical(f"Indexer failed to start: {e}")
        return 1

    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    status_task = PeriodicTask(
        "status-log",
        config.STATUS_LOG_INTERVAL,
        lambda: logger.info(f"Indexer status: {coordinator.status()}"),
    )
    status_task.start()

    logger.info(f"Indexer running (RPC {config.RPC_URL}, gateway {config.IPFS_GATEWAY_URL})")
    shutdown.wait()

    status_task.stop()
    coordinator.stop()
    coordinator.database.dispose()
    logger.info("Indexer stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
