"""
Unit tests for Web3LedgerClient.

The RPC transport is never contacted: eth.get_logs is replaced with canned
logs shaped like the node's responses.
"""

import pytest
from web3 import Web3

from medledger.services.errors import LedgerConnectivityError, LogQueryError
from medledger.services.ledger_client import Web3LedgerClient
from medledger.services.ledger_events import PatientRegistered, UnknownEvent

PATIENT = "0xabc0000000000000000000000000000000000001"


@pytest.fixture
def client(contracts):
    return Web3LedgerClient("http://127.0.0.1:1", contracts, timeout=1)


def _patient_spec(contracts):
    return next(spec for spec in contracts if spec.name == "PatientRegistry")


def _log(spec, topics, data=b"", block=7, log_index=0):
    return {
        "address": Web3.to_checksum_address(spec.address),
        "topics": topics,
        "data": data,
        "blockNumber": block,
        "blockHash": b"\x01" * 32,
        "transactionHash": bytes([block]) * 32,
        "transactionIndex": 0,
        "logIndex": log_index,
        "removed": False,
    }


def _registration_log(client, spec, cid, block=7, log_index=0):
    topics = [
        Web3.keccak(text="PatientRegistered(address,string)"),
        bytes(12) + bytes.fromhex(PATIENT[2:]),
    ]
    data = client.w3.codec.encode(["string"], [cid])
    return _log(spec, topics, data, block, log_index)


class TestFetchEvents:
    """Tests for fetch_events()."""

    def test_rpc_failure_raises_log_query_error(self, client, contracts, monkeypatch):
        def failing_get_logs(params):
            raise ConnectionError("connection reset")

        monkeypatch.setattr(client.w3.eth, "get_logs", failing_get_logs)

        with pytest.raises(LogQueryError) as exc_info:
            client.fetch_events(_patient_spec(contracts), 1, 10)
        assert exc_info.value.contract_name == "PatientRegistry"

    def test_query_uses_checksummed_contract_address(self, client, contracts, monkeypatch):
        seen = []
        monkeypatch.setattr(client.w3.eth, "get_logs", lambda params: seen.append(params) or [])

        spec = _patient_spec(contracts)
        assert client.fetch_events(spec, 5, 9) == []
        assert seen == [{
            "fromBlock": 5,
            "toBlock": 9,
            "address": Web3.to_checksum_address(spec.address),
        }]

    def test_decodes_and_sorts_logs(self, client, contracts, monkeypatch):
        spec = _patient_spec(contracts)
        logs = [
            _registration_log(client, spec, "bafyLater", block=8),
            _registration_log(client, spec, "ipfs://bafyEarlier", block=7, log_index=2),
        ]
        monkeypatch.setattr(client.w3.eth, "get_logs", lambda params: logs)

        events = client.fetch_events(spec, 1, 10)

        assert [type(e) for e in events] == [PatientRegistered, PatientRegistered]
        assert [e.log.block_number for e in events] == [7, 8]
        assert events[0].patient_address == PATIENT
        assert events[0].profile_cid == "bafyearlier"
        assert events[0].log.transaction_hash == "0x" + "07" * 32

    def test_unknown_topic_becomes_unknown_event(self, client, contracts, monkeypatch):
        spec = _patient_spec(contracts)
        stray = _log(spec, [Web3.keccak(text="Transfer(address,address,uint256)")])
        monkeypatch.setattr(client.w3.eth, "get_logs", lambda params: [stray])

        (event,) = client.fetch_events(spec, 1, 10)

        assert isinstance(event, UnknownEvent)
        assert "unrecognized topic" in event.reason


class TestEnsureConnected:
    """Tests for the startup connectivity check."""

    def test_disconnected_node_raises(self, client, monkeypatch):
        monkeypatch.setattr(client.w3, "is_connected", lambda: False)

        with pytest.raises(LedgerConnectivityError, match="unreachable"):
            client.ensure_connected()

    def test_transport_error_raises(self, client, monkeypatch):
        def refused():
            raise ConnectionError("connection refused")

        monkeypatch.setattr(client.w3, "is_connected", refused)

        with pytest.raises(LedgerConnectivityError):
            client.ensure_connected()

    def test_connected_node_passes(self, client, monkeypatch):
        monkeypatch.setattr(client.w3, "is_connected", lambda: True)
        client.ensure_connected()
