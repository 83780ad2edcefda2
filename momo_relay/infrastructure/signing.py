"""
HMAC-SHA256 request signing for outbound webhooks.
"""

import base64
import hashlib
import hmac
from typing import Union

Payload = Union[str, bytes]


def _bytes(value: Payload) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def _digest(payload: Payload, secret: str) -> bytes:
    return hmac.new(_bytes(secret), _bytes(payload), hashlib.sha256).digest()


def sign_hex(payload: Payload, secret: str) -> str:
    """Lowercase hex HMAC-SHA256 of the payload. Sent as X-Webhook-Signature."""
    return _digest(payload, secret).hex()


def sign_base64(payload: Payload, secret: str) -> str:
    return base64.b64encode(_digest(payload, secret)).decode("ascii")


def verify_hex(payload: Payload, signature: str, secret: str) -> bool:
    """Constant-time check of a hex signature."""
    if not signature:
        return False
    return hmac.compare_digest(sign_hex(payload, secret), signature.strip().lower())


def verify_base64(payload: Payload, signature: str, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_base64(payload, secret), signature.strip())
