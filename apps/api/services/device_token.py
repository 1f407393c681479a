"""HMAC device tokens binding a client to the device id it claims."""

import hashlib
import hmac
from typing import Optional

from config import settings


def _secret(secret: Optional[str] = None) -> bytes:
    value = secret if secret is not None else settings.DEVICE_TOKEN_SECRET
    if not value:
        raise ValueError("DEVICE_TOKEN_SECRET is not configured.")
    return value.encode("utf-8")


def generate_device_token(device_id: str, secret: Optional[str] = None) -> str:
    return hmac.new(_secret(secret), device_id.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_device_token(device_id: str, token: Optional[str], secret: Optional[str] = None) -> bool:
    if not device_id or not token:
        return False
    expected = generate_device_token(device_id, secret)
    return hmac.compare_digest(expected, token.strip().lower())


def device_tokens_required() -> bool:
    """Tokens are checked whenever a secret is configured."""
    return bool((settings.DEVICE_TOKEN_SECRET or "").strip())
