"""
Indexer configuration loaded from environment variables.

Supports switching between local and cloud PostgreSQL via DATABASE_MODE,
or a full DATABASE_URL override (used by tests and one-off scripts).
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load .env file from backend directory
backend_dir = Path(__file__).parent.parent
load_dotenv(backend_dir / ".env")

logger = logging.getLogger("config")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


class Config:
    """Indexer configuration."""

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    SQL_ECHO = os.getenv("SQL_ECHO", "0") == "1"

    # Full URL wins over the per-mode settings below
    DATABASE_URL = os.getenv("DATABASE_URL", "")

    # Environment mode: "local" or "cloud"
    DATABASE_MODE = os.getenv("DATABASE_MODE", "local")

    # PostgreSQL - Local
    POSTGRES_HOST_LOCAL = os.getenv("POSTGRES_HOST_LOCAL", "localhost")
    POSTGRES_PORT_LOCAL = os.getenv("POSTGRES_PORT_LOCAL", "5432")
    POSTGRES_DB_LOCAL = os.getenv("POSTGRES_DB_LOCAL", "medledger")
    POSTGRES_USER_LOCAL = os.getenv("POSTGRES_USER_LOCAL", "postgres")
    POSTGRES_PASSWORD_LOCAL = os.getenv("POSTGRES_PASSWORD_LOCAL", "")

    # PostgreSQL - Cloud
    POSTGRES_HOST_CLOUD = os.getenv("POSTGRES_HOST_CLOUD", "")
    POSTGRES_PORT_CLOUD = os.getenv("POSTGRES_PORT_CLOUD", "5432")
    POSTGRES_DB_CLOUD = os.getenv("POSTGRES_DB_CLOUD", "medledger")
    POSTGRES_USER_CLOUD = os.getenv("POSTGRES_USER_CLOUD", "postgres")
    POSTGRES_PASSWORD_CLOUD = os.getenv("POSTGRES_PASSWORD_CLOUD", "")

    # Ledger RPC
    RPC_URL = os.getenv("RPC_URL", "http://localhost:8545")
    RPC_TIMEOUT = _float_env("RPC_TIMEOUT", 30.0)
    PATIENT_REGISTRY_CONTRACT = os.getenv("PATIENT_REGISTRY_CONTRACT", "")
    PROVIDER_REGISTRY_CONTRACT = os.getenv("PROVIDER_REGISTRY_CONTRACT", "")
    MEDICAL_RECORDS_CONTRACT = os.getenv("MEDICAL_RECORDS_CONTRACT", "")
    ACCESS_CONTROL_CONTRACT = os.getenv("ACCESS_CONTROL_CONTRACT", "")
    CONTRACT_ABI_DIR = os.getenv("CONTRACT_ABI_DIR", "")

    # Event ingestion
    START_BLOCK = os.getenv("START_BLOCK", "")
    START_BLOCK_LOOKBACK = _int_env("START_BLOCK_LOOKBACK", 1000)
    EVENT_BATCH_SIZE = _int_env("EVENT_BATCH_SIZE", 1000)
    POLL_INTERVAL = _float_env("POLL_INTERVAL", 30.0)  # seconds
    LIVE_POLL_INTERVAL = _float_env("LIVE_POLL_INTERVAL", 5.0)  # seconds
    LIVE_QUEUE_SIZE = _int_env("LIVE_QUEUE_SIZE", 1000)

    # Content gateway (IPFS)
    IPFS_GATEWAY_URL = os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io")
    IPFS_TIMEOUT = _float_env("IPFS_TIMEOUT", 30.0)  # seconds
    IPFS_RETRY_ATTEMPTS = _int_env("IPFS_RETRY_ATTEMPTS", 3)
    IPFS_RETRY_BASE_DELAY = _float_env("IPFS_RETRY_BASE_DELAY", 1.0)  # seconds
    IPFS_CACHE_EXPIRY = _int_env("IPFS_CACHE_EXPIRY", 24)  # hours

    # Hydration
    HYDRATION_CHUNK_SIZE = _int_env("HYDRATION_CHUNK_SIZE", 10)
    HYDRATION_CHUNK_PAUSE = _float_env("HYDRATION_CHUNK_PAUSE", 1.0)  # seconds
    PROCESS_INTERVAL = _float_env("PROCESS_INTERVAL", 60.0)  # seconds
    HYDRATION_BATCH_SIZE = _int_env("HYDRATION_BATCH_SIZE", 50)

    # Maintenance
    CLEANUP_INTERVAL = _float_env("CLEANUP_INTERVAL", 24 * 60 * 60.0)  # seconds
    STATUS_LOG_INTERVAL = _float_env("STATUS_LOG_INTERVAL", 5 * 60.0)  # seconds

    @classmethod
    def get_database_url(cls) -> str:
        """Build the database URL based on DATABASE_URL / DATABASE_MODE."""
        if cls.DATABASE_URL:
            return cls.DATABASE_URL

        if cls.DATABASE_MODE == "cloud":
            host = cls.POSTGRES_HOST_CLOUD
            port = cls.POSTGRES_PORT_CLOUD
            db = cls.POSTGRES_DB_CLOUD
            user = cls.POSTGRES_USER_CLOUD
            password = cls.POSTGRES_PASSWORD_CLOUD
            mode_label = "CLOUD"
        else:
            host = cls.POSTGRES_HOST_LOCAL
            port = cls.POSTGRES_PORT_LOCAL
            db = cls.POSTGRES_DB_LOCAL
            user = cls.POSTGRES_USER_LOCAL
            password = cls.POSTGRES_PASSWORD_LOCAL
            mode_label = "LOCAL"

        # psycopg3 dialect
        if password:
            url = f"postgresql+psycopg://{user}:{password}@{host}:{port}/{db}"
        else:
            url = f"postgresql+psycopg://{user}@{host}:{port}/{db}"

        logger.info(f"PostgreSQL: {mode_label} ({host})")
        return url

    @classmethod
    def get_start_block(cls) -> Optional[int]:
        """Configured start block, or None to fall back to head minus lookback."""
        raw = (cls.START_BLOCK or "").strip()
        return int(raw) if raw else None

    @classmethod
    def get_contract_addresses(cls) -> List[tuple]:
        """(contract name, address) pairs for every configured contract."""
        pairs = [
            ("PatientRegistry", cls.PATIENT_REGISTRY_CONTRACT),
            ("ProviderRegistry", cls.PROVIDER_REGISTRY_CONTRACT),
            ("MedicalRecords", cls.MEDICAL_RECORDS_CONTRACT),
            ("AccessControl", cls.ACCESS_CONTROL_CONTRACT),
        ]
        return [(name, address.strip()) for name, address in pairs if address and address.strip()]


config = Config()
