"""
Event ABIs of the watched contracts.

Only the events the indexer projects are listed. A deployment whose ABIs
differ can point CONTRACT_ABI_DIR at `<ContractName>.json` files (raw ABI
arrays or build artifacts with an `abi` field).
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger("service.ContractAbis")


def _input(name: str, type_: str, indexed: bool = False) -> Dict[str, Any]:
    return {"name": name, "type": type_, "indexed": indexed}


def _event(name: str, *inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


PATIENT_REGISTRY_ABI = [
    _event(
        "PatientRegistered",
        _input("patient", "address", indexed=True),
        _input("medicalProfileCID", "string"),
    ),
]

PROVIDER_REGISTRY_ABI = [
    _event(
        "ProviderRegistered",
        _input("provider", "address", indexed=True),
        _input("name", "string"),
        _input("specialty", "string"),
        _input("licenseNumber", "string"),
    ),
]

# recordId is emitted unindexed so the plain identifier (not its hash) is
# recoverable from the log data.
MEDICAL_RECORDS_ABI = [
    _event(
        "RecordUploaded",
        _input("recordId", "string"),
        _input("patient", "address", indexed=True),
        _input("provider", "address", indexed=True),
        _input("recordDetailsCID", "string"),
    ),
]

ACCESS_CONTROL_ABI = [
    _event(
        "AccessGranted",
        _input("patient", "address", indexed=True),
        _input("provider", "address", indexed=True),
        _input("recordId", "string"),
        _input("accessType", "uint8"),
        _input("expiryTimestamp", "uint256"),
    ),
    _event(
        "AccessRevoked",
        _input("patient", "address", indexed=True),
        _input("provider", "address", indexed=True),
        _input("recordId", "string"),
        _input("accessType", "uint8"),
    ),
    _event(
        "GeneralAccessGranted",
        _input("patient", "address", indexed=True),
        _input("provider", "address", indexed=True),
        _input("expiryTimestamp", "uint256"),
    ),
    _event(
        "GeneralAccessRevoked",
        _input("patient", "address", indexed=True),
        _input("provider", "address", indexed=True),
    ),
]

DEFAULT_ABIS: Dict[str, List[Dict[str, Any]]] = {
    "PatientRegistry": PATIENT_REGISTRY_ABI,
    "ProviderRegistry": PROVIDER_REGISTRY_ABI,
    "MedicalRecords": MEDICAL_RECORDS_ABI,
    "AccessControl": ACCESS_CONTROL_ABI,
}


@dataclass(frozen=True)
class ContractSpec:
    """A watched contract: name, address and the ABI used to decode its logs."""
    name: str
    address: str
    abi: List[Dict[str, Any]] = field(default_factory=list, hash=False, compare=False)

    @property
    def event_abis(self) -> List[Dict[str, Any]]:
        return [item for item in self.abi if isinstance(item, dict) and item.get("type") == "event"]


def event_signature(event_abi: Dict[str, Any]) -> str:
    """Canonical `Name(type1,type2)` form used to compute the topic hash."""
    types = ",".join(item["type"] for item in event_abi.get("inputs", []))
    return f"{event_abi['name']}({types})"


def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def load_abi(contract_name: str, abi_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    """ABI from `<abi_dir>/<contract_name>.json` when present, else the built-in one."""
    if abi_dir:
        for filename in (f"{contract_name}.json", f"{contract_name}.abi.json"):
            path = os.path.join(abi_dir, filename)
            if os.path.exists(path):
                with open(path, "r", encoding="utf-8") as f:
                    abi = _extract_abi(json.load(f))
                if abi:
                    logger.info(f"Loaded ABI for {contract_name} from {path}")
                    return abi
        logger.warning(f"No ABI file for {contract_name} in {abi_dir}")
    if contract_name not in DEFAULT_ABIS:
        raise ValueError(f"No ABI known for contract {contract_name}")
    # Logs from a contract with a different event layout decode as unknown events
    logger.warning(
        f"Using built-in ABI for {contract_name}; set CONTRACT_ABI_DIR if the "
        f"deployed contract's events differ"
    )
    return DEFAULT_ABIS[contract_name]


def build_contract_specs(addresses, abi_dir: Optional[str] = None) -> List[ContractSpec]:
    """ContractSpec list from (name, address) pairs."""
    return [
        ContractSpec(name=name, address=address, abi=load_abi(name, abi_dir))
        for name, address in addresses
    ]
