"""Credit owner resolution and identifier masking helpers."""

from __future__ import annotations

from typing import Optional


USER_OWNER_PREFIX = "user_"


def user_owner_id(user_id: str) -> str:
    """Tag an authenticated user id so it can never collide with a device id."""
    return f"{USER_OWNER_PREFIX}{user_id}"


def is_user_owner(owner_id: str) -> bool:
    return str(owner_id or "").startswith(USER_OWNER_PREFIX)


def resolve_owner_id(device_id: str, user_id: Optional[str] = None) -> str:
    """Return the ledger key for a caller.

    An authenticated caller always maps to the tagged user owner; the raw
    device id is only used for anonymous callers.
    """
    user = str(user_id or "").strip()
    if user:
        return user_owner_id(user)
    device = str(device_id or "").strip()
    if not device:
        raise ValueError("device_id is required to resolve an anonymous owner")
    return device


def mask_id(value: Optional[str], visible: int = 8) -> str:
    text = str(value or "")
    if not text:
        return "-"
    if len(text) <= visible:
        return text
    return f"{text[:visible]}..."
