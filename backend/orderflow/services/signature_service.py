"""
Signature Service

HMAC-SHA256 helpers shared by the webhook normalizers and the checkout
session manager (cart snapshot digests).
"""
import hmac
import hashlib
import json
from typing import Dict, Any, Union


def create_canonical_json(data: Dict[str, Any]) -> str:
    """
    Create canonical JSON representation for hashing.

    Ensures consistent serialization:
    - Sorted keys
    - No whitespace
    - UTF-8 encoding
    """
    return json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)


def sha256_digest(data: Union[bytes, str]) -> str:
    """Hex SHA-256 of raw bytes or text."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def compute_signature(secret_key: str, message: Union[bytes, str]) -> str:
    """
    Compute HMAC-SHA256 of ``message`` as lowercase hex.

    Args:
        secret_key: Shared secret configured for the gateway
        message: Exact bytes (or text) the gateway signed
    """
    if isinstance(message, str):
        message = message.encode('utf-8')
    return hmac.new(
        secret_key.encode('utf-8'),
        message,
        hashlib.sha256
    ).hexdigest()


def verify_signature(secret_key: str, message: Union[bytes, str], signature_value: str) -> bool:
    """
    Verify an HMAC-SHA256 signature using constant-time comparison.

    Returns:
        True if signature valid, False otherwise
    """
    expected = compute_signature(secret_key, message)
    return hmac.compare_digest(expected, signature_value.strip().lower())
