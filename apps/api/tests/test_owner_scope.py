from unittest.mock import patch

import pytest

from services.device_token import generate_device_token, verify_device_token
from services.owner import is_user_owner, mask_id, resolve_owner_id
from services.session_token import create_session_token


def test_authenticated_caller_never_uses_device_id_as_owner():
    assert resolve_owner_id("device-abc", "42") == "user_42"
    assert resolve_owner_id("device-abc") == "device-abc"
    assert resolve_owner_id("device-abc", "  ") == "device-abc"
    assert is_user_owner("user_42")
    assert not is_user_owner("device-abc")


def test_resolve_owner_requires_device_for_anonymous_callers():
    with pytest.raises(ValueError):
        resolve_owner_id("", None)


def test_mask_id_truncates_long_identifiers():
    assert mask_id("0123456789abcdef") == "01234567..."
    assert mask_id("short") == "short"
    assert mask_id(None) == "-"


def test_device_token_round_trip_and_rejects_other_devices():
    token = generate_device_token("device-1", secret="s" * 32)
    assert verify_device_token("device-1", token, secret="s" * 32)
    assert not verify_device_token("device-2", token, secret="s" * 32)
    assert not verify_device_token("device-1", None, secret="s" * 32)


@pytest.mark.asyncio
async def test_balance_requires_a_valid_device_id(api_client):
    missing = await api_client.get("/credits/balance")
    assert missing.status_code == 400

    reserved = await api_client.get("/credits/balance", headers={"x-device-id": "user_42"})
    assert reserved.status_code == 400

    too_long = await api_client.get("/credits/balance", headers={"x-device-id": "d" * 101})
    assert too_long.status_code == 400


@pytest.mark.asyncio
async def test_session_cookie_and_bearer_resolve_to_user_owner(api_client):
    token = create_session_token("42")["token"]

    bearer = await api_client.get(
        "/credits/balance",
        headers={"x-device-id": "device-a", "Authorization": f"Bearer {token}"},
    )
    assert bearer.status_code == 200
    assert bearer.json()["owner_id"] == "user_42"
    assert bearer.json()["authenticated"] is True

    api_client.cookies.set("session_token", token)
    try:
        cookie = await api_client.get("/credits/balance", headers={"x-device-id": "device-a"})
    finally:
        api_client.cookies.clear()
    assert cookie.json()["owner_id"] == "user_42"

    guest = await api_client.get("/credits/balance", headers={"x-device-id": "device-a"})
    assert guest.json()["owner_id"] == "device-a"
    assert guest.json()["authenticated"] is False


@pytest.mark.asyncio
async def test_invalid_session_token_is_rejected(api_client):
    response = await api_client.get(
        "/credits/balance",
        headers={"x-device-id": "device-a", "Authorization": "Bearer not-a-token"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_device_token_enforced_when_secret_configured(api_client):
    secret = "device-secret-for-tests-0001"
    with patch("config.settings.DEVICE_TOKEN_SECRET", secret):
        rejected = await api_client.get("/credits/balance", headers={"x-device-id": "device-t"})
        assert rejected.status_code == 401

        issued = await api_client.post("/device/issue", headers={"x-device-id": "device-t"})
        assert issued.status_code == 200
        token = issued.json()["device_token"]

        accepted = await api_client.get(
            "/credits/balance",
            headers={"x-device-id": "device-t", "x-device-token": token},
        )
        assert accepted.status_code == 200
