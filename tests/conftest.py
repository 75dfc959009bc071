"""
Pytest configuration for all tests.
Sets up Python path to find the backend medledger package and provides
an in-memory store, fake ledger and gateway collaborators, and a clock.
"""

import sys
import os
from datetime import datetime, timedelta

import pytest
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'backend'))
if backend_path not in sys.path:
    sys.path.insert(0, backend_path)

from medledger.db.postgres import Database  # noqa: E402
from medledger.models import AccessScope  # noqa: E402
from medledger.services.contract_abis import DEFAULT_ABIS, ContractSpec  # noqa: E402
from medledger.services.errors import (  # noqa: E402
    ContentIntegrityError,
    GatewayFetchError,
    LedgerConnectivityError,
    LogQueryError,
)
from medledger.services.identifiers import normalize_cid  # noqa: E402
from medledger.services.ledger_events import (  # noqa: E402
    AccessGranted,
    AccessRevoked,
    LogPointer,
    PatientRegistered,
    ProviderRegistered,
    RecordUploaded,
)

CONTRACT_ADDRESSES = {
    "PatientRegistry": "0x" + "1" * 40,
    "ProviderRegistry": "0x" + "2" * 40,
    "MedicalRecords": "0x" + "3" * 40,
    "AccessControl": "0x" + "4" * 40,
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLedger:
    """In-memory ledger: a head and per-contract event lists."""

    def __init__(self, head=0):
        self.head = head
        self.events = {}
        self.failing = set()
        self.unreachable = False
        self.queries = []
        self.connect_checks = 0

    def add(self, *events):
        for event in events:
            self.events.setdefault(event.log.contract_name, []).append(event)
            self.head = max(self.head, event.log.block_number)

    def ensure_connected(self):
        self.connect_checks += 1
        if self.unreachable:
            raise LedgerConnectivityError("RPC unreachable")

    def get_block_number(self):
        if self.unreachable:
            raise ConnectionError("connection refused")
        return self.head

    def fetch_events(self, spec, from_block, to_block):
        self.queries.append((spec.name, from_block, to_block))
        if spec.name in self.failing:
            raise LogQueryError(spec.name, from_block, to_block, "rpc timeout")
        matched = [
            e for e in self.events.get(spec.name, [])
            if from_block <= e.log.block_number <= to_block
        ]
        return sorted(matched, key=lambda e: e.log.sort_key)


class FakeGateway:
    """Gateway serving documents from a dict, with scripted failures."""

    def __init__(self):
        self.documents = {}
        self.transient_failures = {}
        self.corrupt = set()
        self.calls = []

    def fetch(self, cid):
        self.calls.append(cid)
        if self.transient_failures.get(cid, 0) > 0:
            self.transient_failures[cid] -= 1
            raise GatewayFetchError(f"GET {cid} returned HTTP 504")
        if cid in self.corrupt:
            raise ContentIntegrityError(f"Content {cid} is not valid JSON")
        if cid not in self.documents:
            raise GatewayFetchError(f"GET {cid} returned HTTP 404")
        return dict(self.documents[cid])


class EventFactory:
    """
    Builds typed ledger events with unique (tx hash, log index) pointers.

    CIDs are normalized the way decode_event normalizes them.
    """

    def _log(self, contract, block, log_index):
        return LogPointer(
            contract_name=contract,
            contract_address=CONTRACT_ADDRESSES[contract],
            transaction_hash="0x%032x%032x" % (block, log_index),
            block_number=block,
            log_index=log_index,
        )

    def patient_registered(self, patient, cid, block, log_index=0):
        return PatientRegistered(
            log=self._log("PatientRegistry", block, log_index),
            patient_address=patient,
            profile_cid=normalize_cid(cid),
        )

    def provider_registered(self, provider, name, block, log_index=0, specialty="Cardiology"):
        return ProviderRegistered(
            log=self._log("ProviderRegistry", block, log_index),
            provider_address=provider,
            name=name,
            specialty=specialty,
            license_number="LIC-001",
        )

    def record_uploaded(self, record_id, patient, cid, block, log_index=0, provider=None):
        return RecordUploaded(
            log=self._log("MedicalRecords", block, log_index),
            record_id=record_id,
            patient_address=patient,
            provider_address=provider,
            record_cid=normalize_cid(cid),
        )

    def access_granted(self, patient, provider, block, log_index=0, record_id=None, expiry=None):
        scope = AccessScope.RECORD_SPECIFIC if record_id else AccessScope.GENERAL
        return AccessGranted(
            log=self._log("AccessControl", block, log_index),
            patient_address=patient,
            provider_address=provider,
            scope=scope,
            record_id=record_id,
            expiry_timestamp=expiry,
        )

    def access_revoked(self, patient, provider, block, log_index=0, record_id=None):
        scope = AccessScope.RECORD_SPECIFIC if record_id else AccessScope.GENERAL
        return AccessRevoked(
            log=self._log("AccessControl", block, log_index),
            patient_address=patient,
            provider_address=provider,
            scope=scope,
            record_id=record_id,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    """Fresh in-memory SQLite store with every table created."""
    db = Database(
        "sqlite://",
        engine_kwargs={
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        },
    )
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def contracts():
    return [
        ContractSpec(name=name, address=address, abi=DEFAULT_ABIS[name])
        for name, address in CONTRACT_ADDRESSES.items()
    ]


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def events():
    return EventFactory()
