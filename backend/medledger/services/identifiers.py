"""
Normalization and validation of ledger addresses and content identifiers.

Every address and CID is normalized before any lookup or write so that the
same subject or payload never appears under two spellings.
"""

import re
from typing import Optional

from medledger.services.errors import QueryValidationError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy...)
_CID_PREFIXES = ("ipfs://ipfs/", "ipfs://", "/ipfs/")


def normalize_address(address: Optional[str]) -> Optional[str]:
    """Lower-case an address; None and the zero address map to None."""
    if address is None:
        return None
    value = str(address).strip().lower()
    if not value or value == ZERO_ADDRESS:
        return None
    return value


def is_valid_address(address: Optional[str]) -> bool:
    return bool(address) and bool(_ADDRESS_RE.match(str(address).strip()))


def require_address(address: Optional[str], field: str = "address") -> str:
    """Validate and normalize an address supplied by a caller."""
    if not is_valid_address(address):
        raise QueryValidationError(f"Invalid {field}: {address!r}")
    return str(address).strip().lower()


def normalize_cid(cid: Optional[str]) -> Optional[str]:
    """
    Canonical spelling of a CID.

    Strips whitespace and ipfs:// or /ipfs/ prefixes (plus any path suffix).
    CIDv1 base32 is case-insensitive and is lower-cased; CIDv0 is base58 and
    is kept verbatim.
    """
    if cid is None:
        return None
    value = str(cid).strip()
    for prefix in _CID_PREFIXES:
        if value.lower().startswith(prefix):
            value = value[len(prefix):]
            break
    value = value.split("/", 1)[0].strip()
    if not value:
        return None
    if not value.startswith("Qm"):
        value = value.lower()
    return value


def is_valid_cid(cid: Optional[str], max_len: int = 128) -> bool:
    value = normalize_cid(cid)
    if not value or len(value) > max_len:
        return False
    return bool(_CIDV0_RE.match(value) or _CIDV1_BASE32_RE.match(value))
