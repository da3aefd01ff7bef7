"""Security utilities for identifier hashing.

Raw client network identifiers (IP addresses) never leave this module:
they are normalized and digested with a keyed HMAC before any store,
comparison or log line sees them.
"""

import hashlib
import hmac
import ipaddress

import structlog

logger = structlog.get_logger(__name__)

# Bucket shared by every request whose identifier could not be hashed.
UNIDENTIFIED_TYPE = "unidentified"
UNIDENTIFIED_VALUE = "unidentified"

IP_IDENTIFIER_TYPE = "ip"

_PLACEHOLDER_IDENTIFIERS = frozenset({"", "unknown", "none", "null", "-"})


def normalize_identifier(raw_identifier: str | None) -> str | None:
    """
    Normalize a raw network identifier for consistent comparison.

    - Takes the first hop of a comma-separated forwarded list
    - Canonicalizes IP addresses (compressed IPv6, IPv4-mapped collapsed to IPv4)
    - Lowercases anything that is not a parseable address

    Returns None for empty or placeholder values.
    """
    if raw_identifier is None:
        return None

    candidate = raw_identifier.split(",")[0].strip()
    if candidate.lower() in _PLACEHOLDER_IDENTIFIERS:
        return None

    # Strip a port from bracketed IPv6 ("[::1]:443") or dotted IPv4 ("1.2.3.4:80")
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    elif candidate.count(":") == 1 and "." in candidate:
        candidate = candidate.split(":")[0]

    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate.lower()

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return address.compressed


class IdentityHasher:
    """
    Deterministic one-way hashing of client identifiers.

    The key is a fixed server-side pepper: the goal is stable comparison of
    the same client across requests, so there is no rotation.
    """

    def __init__(self, key: str):
        if not key:
            raise ValueError("IdentityHasher requires a non-empty key")
        self._key = key.encode()

    def hash_value(self, value: str) -> str:
        """HMAC-SHA256 of an already-normalized value."""
        return hmac.new(self._key, value.encode(), hashlib.sha256).hexdigest()

    def hash(self, raw_identifier: str | None) -> str | None:
        """
        Hash a raw network identifier.

        Returns None when the identifier is missing or cannot be hashed; the
        caller must then fall back to the shared unidentified bucket.
        """
        try:
            normalized = normalize_identifier(raw_identifier)
            if normalized is None:
                return None
            return self.hash_value(normalized)
        except (TypeError, AttributeError, UnicodeError) as e:
            logger.warning("identifier_hash_failed", error_type=type(e).__name__)
            return None

    def hash_fingerprint(self, fingerprint: str | None) -> str | None:
        """
        Hash a client-supplied device fingerprint for storage.

        A fingerprint that cannot be encoded is treated as absent.
        """
        if not fingerprint or not fingerprint.strip():
            return None
        try:
            return self.hash_value(f"fp:{fingerprint.strip()}")
        except UnicodeError as e:
            logger.warning("fingerprint_hash_failed", error_type=type(e).__name__)
            return None
