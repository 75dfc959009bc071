"""
Typed ledger events.

Logs are decoded exactly once, at the RPC boundary, into one of the event
classes below. Everything downstream dispatches on the class, never on a
loosely-typed argument map.

Supported contract events:
- PatientRegistered(patient, medicalProfileCID)
- ProviderRegistered(provider, name, specialty, licenseNumber)
- RecordUploaded(recordId, patient, provider, recordDetailsCID)
- AccessGranted(patient, provider, recordId, accessType, expiryTimestamp)
- AccessRevoked(patient, provider, recordId, accessType)
- GeneralAccessGranted(patient, provider, expiryTimestamp)
- GeneralAccessRevoked(patient, provider)
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from medledger.models.access_grant import AccessScope
from medledger.services.errors import EventDecodeError
from medledger.services.identifiers import normalize_address, normalize_cid

# Largest value a BIGINT column can hold; uint256 expiries are clamped to it
MAX_STORED_INT = 2 ** 63 - 1


@dataclass(frozen=True)
class LogPointer:
    """Where a log came from. (transaction_hash, log_index) is its identity."""
    contract_name: str
    contract_address: str
    transaction_hash: str
    block_number: int
    log_index: int

    @property
    def sort_key(self):
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class PatientRegistered:
    log: LogPointer
    patient_address: str
    profile_cid: Optional[str]

    event_name = "PatientRegistered"


@dataclass(frozen=True)
class ProviderRegistered:
    log: LogPointer
    provider_address: str
    name: Optional[str] = None
    specialty: Optional[str] = None
    license_number: Optional[str] = None

    event_name = "ProviderRegistered"


@dataclass(frozen=True)
class RecordUploaded:
    log: LogPointer
    record_id: str
    patient_address: str
    provider_address: Optional[str]
    record_cid: str

    event_name = "RecordUploaded"


@dataclass(frozen=True)
class AccessGranted:
    log: LogPointer
    patient_address: str
    provider_address: str
    scope: AccessScope
    record_id: Optional[str] = None
    expiry_timestamp: Optional[int] = None
    source_event: str = "AccessGranted"

    event_name = "AccessGranted"


@dataclass(frozen=True)
class AccessRevoked:
    log: LogPointer
    patient_address: str
    provider_address: str
    scope: AccessScope
    record_id: Optional[str] = None
    source_event: str = "AccessRevoked"

    event_name = "AccessRevoked"


@dataclass(frozen=True)
class UnknownEvent:
    """A log that could not be decoded; stored raw and left unprocessed."""
    log: LogPointer
    raw_event_name: str = "Unknown"
    reason: str = ""
    raw_args: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_name(self) -> str:
        return self.raw_event_name


LedgerEvent = Union[
    PatientRegistered,
    ProviderRegistered,
    RecordUploaded,
    AccessGranted,
    AccessRevoked,
    UnknownEvent,
]


def stored_event_name(event: LedgerEvent) -> str:
    """Name recorded on the raw event row (the contract's own event name)."""
    return getattr(event, "source_event", None) or event.event_name


def event_args(event: LedgerEvent) -> Dict[str, Any]:
    """JSON-safe field map of an event, without the log pointer."""
    data = asdict(event)
    data.pop("log", None)
    for key, value in list(data.items()):
        if isinstance(value, AccessScope):
            data[key] = value.value
    return data


# =============================================================================
# Decoding from contract argument maps
# =============================================================================

def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).strip()
    return text or None


def _required_address(args: Dict[str, Any], key: str) -> str:
    address = normalize_address(_text(args.get(key)))
    if address is None:
        raise EventDecodeError(f"missing or zero address for {key!r}")
    return address


def _expiry(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        expiry = int(value)
    except (TypeError, ValueError):
        raise EventDecodeError(f"invalid expiry timestamp {value!r}")
    if expiry <= 0:
        return None
    return min(expiry, MAX_STORED_INT)


def _scope(access_type: Any) -> AccessScope:
    try:
        code = int(access_type)
    except (TypeError, ValueError):
        raise EventDecodeError(f"invalid accessType {access_type!r}")
    return AccessScope.GENERAL if code == 0 else AccessScope.RECORD_SPECIFIC


def _decode_patient_registered(args, log):
    return PatientRegistered(
        log=log,
        patient_address=_required_address(args, "patient"),
        profile_cid=normalize_cid(_text(args.get("medicalProfileCID"))),
    )


def _decode_provider_registered(args, log):
    return ProviderRegistered(
        log=log,
        provider_address=_required_address(args, "provider"),
        name=_text(args.get("name")),
        specialty=_text(args.get("specialty")),
        license_number=_text(args.get("licenseNumber")),
    )


def _decode_record_uploaded(args, log):
    record_id = _text(args.get("recordId"))
    record_cid = normalize_cid(_text(args.get("recordDetailsCID")))
    if not record_id:
        raise EventDecodeError("RecordUploaded without recordId")
    if not record_cid:
        raise EventDecodeError(f"RecordUploaded {record_id} without recordDetailsCID")
    return RecordUploaded(
        log=log,
        record_id=record_id,
        patient_address=_required_address(args, "patient"),
        provider_address=normalize_address(_text(args.get("provider"))),
        record_cid=record_cid,
    )


def _decode_access_granted(args, log):
    scope = _scope(args.get("accessType"))
    record_id = _text(args.get("recordId")) if scope is AccessScope.RECORD_SPECIFIC else None
    return AccessGranted(
        log=log,
        patient_address=_required_address(args, "patient"),
        provider_address=_required_address(args, "provider"),
        scope=scope,
        record_id=record_id,
        expiry_timestamp=_expiry(args.get("expiryTimestamp")),
    )


def _decode_access_revoked(args, log):
    scope = _scope(args.get("accessType"))
    record_id = _text(args.get("recordId")) if scope is AccessScope.RECORD_SPECIFIC else None
    return AccessRevoked(
        log=log,
        patient_address=_required_address(args, "patient"),
        provider_address=_required_address(args, "provider"),
        scope=scope,
        record_id=record_id,
    )


def _decode_general_access_granted(args, log):
    return AccessGranted(
        log=log,
        patient_address=_required_address(args, "patient"),
        provider_address=_required_address(args, "provider"),
        scope=AccessScope.GENERAL,
        expiry_timestamp=_expiry(args.get("expiryTimestamp")),
        source_event="GeneralAccessGranted",
    )


def _decode_general_access_revoked(args, log):
    return AccessRevoked(
        log=log,
        patient_address=_required_address(args, "patient"),
        provider_address=_required_address(args, "provider"),
        scope=AccessScope.GENERAL,
        source_event="GeneralAccessRevoked",
    )


_DECODERS: Dict[str, Callable[[Dict[str, Any], LogPointer], LedgerEvent]] = {
    "PatientRegistered": _decode_patient_registered,
    "ProviderRegistered": _decode_provider_registered,
    "RecordUploaded": _decode_record_uploaded,
    "AccessGranted": _decode_access_granted,
    "AccessRevoked": _decode_access_revoked,
    "GeneralAccessGranted": _decode_general_access_granted,
    "GeneralAccessRevoked": _decode_general_access_revoked,
}

SUPPORTED_EVENTS = tuple(_DECODERS.keys())


def decode_event(event_name: str, args: Dict[str, Any], log: LogPointer) -> LedgerEvent:
    """
    Map a contract event name and its decoded arguments onto a typed event.

    Raises EventDecodeError for unsupported events or malformed arguments.
    """
    decoder = _DECODERS.get(event_name)
    if decoder is None:
        raise EventDecodeError(f"unsupported event {event_name!r}")
    return decoder(args, log)
