# paygate/paymentauth/validation.py
"""
Format checks for EVM addresses, transaction hashes, private keys and URLs.
"""
import re
from typing import Any, Dict
from urllib.parse import urlparse

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
PRIVATE_KEY_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
AMOUNT_RE = re.compile(r"^[0-9]+$")

SENSITIVE_KEYS = ("private_key", "privateKey", "agent_private_key")


def is_valid_address(address: Any) -> bool:
    """Check for 0x followed by 40 hex characters."""
    return isinstance(address, str) and bool(ADDRESS_RE.fullmatch(address))


def is_valid_tx_hash(tx_hash: Any) -> bool:
    """Check for 0x followed by 64 hex characters."""
    return isinstance(tx_hash, str) and bool(TX_HASH_RE.fullmatch(tx_hash))


def is_valid_private_key(key: Any) -> bool:
    """Check for 0x followed by 64 hex characters."""
    return isinstance(key, str) and bool(PRIVATE_KEY_RE.fullmatch(key))


def is_valid_amount(amount: Any) -> bool:
    """Amounts are non-negative integer strings in base units."""
    return isinstance(amount, str) and bool(AMOUNT_RE.fullmatch(amount))


def is_valid_url(url: Any) -> bool:
    """Accept absolute http(s) URLs with a host."""
    if not isinstance(url, str):
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of a configuration mapping safe for logging.

    Private key entries are replaced with "[REDACTED]".
    """
    redacted = dict(config)
    for key in SENSITIVE_KEYS:
        if redacted.get(key):
            redacted[key] = "[REDACTED]"
    return redacted
