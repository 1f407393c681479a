"""Caller identity dependencies: device id, optional user session, resolved owner."""

from dataclasses import dataclass
import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.device_token import device_tokens_required, verify_device_token
from services.owner import USER_OWNER_PREFIX, resolve_owner_id
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)

DEVICE_ID_HEADER = "x-device-id"
DEVICE_TOKEN_HEADER = "x-device-token"
DEVICE_TOKEN_COOKIE = "device_token"
MAX_DEVICE_ID_LENGTH = 100


@dataclass
class OwnerContext:
    device_id: str
    owner_id: str
    user_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)


def validate_device_id(device_id: Optional[str]) -> str:
    value = str(device_id or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail="Missing x-device-id header.")
    if len(value) > MAX_DEVICE_ID_LENGTH:
        raise HTTPException(status_code=400, detail="Device id is too long.")
    if value.startswith(USER_OWNER_PREFIX):
        raise HTTPException(status_code=400, detail="Device id uses a reserved prefix.")
    return value


def _session_user_id(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    """Cookie first, then Bearer. No token means an anonymous caller."""
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token and credentials and credentials.scheme.lower() == "bearer":
        token = credentials.credentials
    if not token:
        return None
    try:
        return decode_session_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


async def get_owner_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> OwnerContext:
    device_id = validate_device_id(request.headers.get(DEVICE_ID_HEADER))

    if device_tokens_required():
        token = request.headers.get(DEVICE_TOKEN_HEADER) or request.cookies.get(DEVICE_TOKEN_COOKIE)
        if not verify_device_token(device_id, token):
            raise HTTPException(status_code=401, detail="Missing or invalid device token.")

    user_id = _session_user_id(request, credentials)
    return OwnerContext(
        device_id=device_id,
        owner_id=resolve_owner_id(device_id, user_id),
        user_id=user_id,
    )


async def require_user(owner: OwnerContext = Depends(get_owner_context)) -> OwnerContext:
    if not owner.authenticated:
        raise HTTPException(status_code=401, detail="Login required.")
    return owner


async def require_admin(request: Request) -> None:
    expected = settings.ADMIN_API_KEY
    supplied = request.headers.get("x-admin-key")
    if not expected or not supplied or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized.")
