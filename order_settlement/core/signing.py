"""
Keyed-hash signing for gateway requests and callbacks.

Both gateways sign a canonical query string: keys sorted lexicographically,
joined as ``key=value`` pairs with ``&``. Values are used exactly as
received; any transformation before canonicalization breaks the signature.

Algorithm A (MoMo) is HMAC-SHA256 compared case-sensitively.
Algorithm B (VNPay) is HMAC-SHA512 compared case-insensitively.
"""
import hashlib
import hmac
from enum import Enum
from typing import Any, Mapping


class SignatureAlgorithm(str, Enum):
    """Signature variants, one per gateway family."""

    HMAC_SHA256 = "hmac_sha256"
    HMAC_SHA512 = "hmac_sha512"

    @property
    def case_sensitive(self) -> bool:
        return self is SignatureAlgorithm.HMAC_SHA256


_DIGESTS = {
    SignatureAlgorithm.HMAC_SHA256: hashlib.sha256,
    SignatureAlgorithm.HMAC_SHA512: hashlib.sha512,
}


def _as_wire_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonical_query(params: Mapping[str, Any]) -> str:
    """
    Build the canonical string for signing.

    Example:
        canonical_query({"b": "2", "a": "1"}) == "a=1&b=2"
    """
    return "&".join(f"{key}={_as_wire_value(params[key])}" for key in sorted(params))


def compute_signature(data: str, secret: str, algorithm: SignatureAlgorithm) -> str:
    """HMAC of ``data`` under ``secret``, rendered as lowercase hex."""
    digest = _DIGESTS[algorithm]
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), digest).hexdigest()


def sign(params: Mapping[str, Any], secret: str, algorithm: SignatureAlgorithm) -> str:
    """Sign the canonical form of ``params``."""
    return compute_signature(canonical_query(params), secret, algorithm)


def verify_signature(
    params: Mapping[str, Any],
    provided_signature: str,
    secret: str,
    algorithm: SignatureAlgorithm,
) -> bool:
    """
    Recompute the signature and compare it with the provided one.

    Args:
        params: Signed fields, excluding the signature field itself
        provided_signature: Signature sent by the gateway
        secret: Gateway-specific secret key
        algorithm: Which keyed hash the gateway uses

    Returns:
        bool: True if the signatures match under the gateway's case rules
    """
    if not provided_signature:
        return False
    expected = sign(params, secret, algorithm)
    if algorithm.case_sensitive:
        return expected == provided_signature
    return expected.lower() == provided_signature.lower()
