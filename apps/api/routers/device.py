"""Device token issuance."""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from config import is_production
from routers.owner_scope import DEVICE_ID_HEADER, DEVICE_TOKEN_COOKIE, validate_device_id
from routers.rate_limit import rate_limit
from services.device_token import device_tokens_required, generate_device_token

router = APIRouter()


@router.post("/issue")
async def issue_device_token(
    request: Request,
    response: Response,
    _rate_limit: None = Depends(rate_limit("device_issue", limit=30, window_seconds=3600)),
):
    device_id = validate_device_id(request.headers.get(DEVICE_ID_HEADER))
    if not device_tokens_required():
        raise HTTPException(status_code=503, detail="Device tokens are not configured.")

    token = generate_device_token(device_id)
    response.set_cookie(
        DEVICE_TOKEN_COOKIE,
        token,
        httponly=True,
        secure=is_production(),
        samesite="lax",
        max_age=365 * 24 * 3600,
    )
    return {"device_id": device_id, "device_token": token}
