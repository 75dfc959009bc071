"""
Ledger RPC client (web3.py over JSON-RPC HTTP).

Exposes the two reads the ingestor needs, current head and logs for one
contract over a block range, and decodes every log into a typed ledger
event on the way out.
"""

import logging
from typing import Any, Dict, List, Optional

from web3 import Web3

from medledger.services.contract_abis import ContractSpec, event_signature
from medledger.services.errors import EventDecodeError, LedgerConnectivityError, LogQueryError
from medledger.services.ledger_events import LedgerEvent, LogPointer, UnknownEvent, decode_event


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value).lower()


def _json_safe(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= 2 ** 63:
        return str(value)
    return value


class Web3LedgerClient:
    """
    Ledger access for a fixed set of watched contracts.

    Usage:
        client = Web3LedgerClient("http://localhost:8545", specs)
        head = client.get_block_number()
        events = client.fetch_events(specs[0], head - 10, head)
    """

    def __init__(self, rpc_url: str, contracts: List[ContractSpec], timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.logger = logging.getLogger("service.LedgerClient")
        self._contracts: Dict[str, Any] = {}
        self._topics: Dict[str, Dict[str, str]] = {}

        for spec in contracts:
            self._contracts[spec.name] = self.w3.eth.contract(
                address=Web3.to_checksum_address(spec.address), abi=spec.abi
            )
            self._topics[spec.name] = {
                _to_hex(Web3.keccak(text=event_signature(event_abi))): event_abi["name"]
                for event_abi in spec.event_abis
                if not event_abi.get("anonymous")
            }

    def ensure_connected(self) -> None:
        try:
            connected = self.w3.is_connected()
        except Exception as e:
            raise LedgerConnectivityError(f"RPC {self.rpc_url} unreachable: {e}") from e
        if not connected:
            raise LedgerConnectivityError(f"RPC {self.rpc_url} unreachable")

    def get_block_number(self) -> int:
        return int(self.w3.eth.block_number)

    def fetch_events(self, spec: ContractSpec, from_block: int, to_block: int) -> List[LedgerEvent]:
        """
        All logs of one contract in [from_block, to_block], decoded and sorted.

        Raises LogQueryError when the RPC call fails. Logs that cannot be
        decoded come back as UnknownEvent instead of raising.
        """
        try:
            logs = self.w3.eth.get_logs({
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": Web3.to_checksum_address(spec.address),
            })
        except Exception as e:
            raise LogQueryError(spec.name, from_block, to_block, str(e)) from e

        events = [self._decode(spec, log) for log in logs]
        events.sort(key=lambda event: event.log.sort_key)
        return events

    def _decode(self, spec: ContractSpec, log: Dict[str, Any]) -> LedgerEvent:
        pointer = LogPointer(
            contract_name=spec.name,
            contract_address=_to_hex(log["address"]),
            transaction_hash=_to_hex(log["transactionHash"]),
            block_number=int(log["blockNumber"]),
            log_index=int(log["logIndex"]),
        )
        topics = log.get("topics") or []
        topic0 = _to_hex(topics[0]) if topics else None
        event_name: Optional[str] = self._topics.get(spec.name, {}).get(topic0)
        if event_name is None:
            return UnknownEvent(log=pointer, reason=f"unrecognized topic {topic0}")

        contract = self._contracts[spec.name]
        try:
            decoded = getattr(contract.events, event_name)().process_log(log)
            args = _json_safe(dict(decoded["args"]))
        except Exception as e:
            self.logger.warning(
                f"Failed decoding {event_name} at {pointer.transaction_hash}:{pointer.log_index}: {e}"
            )
            return UnknownEvent(log=pointer, raw_event_name=event_name, reason=str(e))

        try:
            return decode_event(event_name, args, pointer)
        except EventDecodeError as e:
            self.logger.warning(
                f"Malformed {event_name} at {pointer.transaction_hash}:{pointer.log_index}: {e}"
            )
            return UnknownEvent(log=pointer, raw_event_name=event_name, reason=str(e), raw_args=args)
