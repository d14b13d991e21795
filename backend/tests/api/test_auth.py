"""Tests for bearer JWT authentication."""

import time
from unittest.mock import MagicMock

import jwt as pyjwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from entitlements.core.auth import (
    AuthenticatedUser,
    decode_access_token,
    is_admin_user,
    require_admin,
    require_auth,
)
from entitlements.core.config import get_settings

pytestmark = pytest.mark.unit

_TEST_SECRET = "test-secret-with-at-least-thirty-two-bytes"


@pytest.fixture(autouse=True)
def jwt_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "auth_jwt_secret", _TEST_SECRET)


def _sign_jwt(payload: dict, secret: str = _TEST_SECRET) -> str:
    return pyjwt.encode(payload, secret, algorithm="HS256")


# ---------------------------------------------------------------------------
# Tests for decode_access_token
# ---------------------------------------------------------------------------
class TestDecodeAccessToken:
    def test_valid_token(self):
        now = int(time.time())
        user = decode_access_token(_sign_jwt({"sub": "user_abc", "exp": now + 300, "role": "student"}))

        assert user.user_id == "user_abc"
        assert user.claims["role"] == "student"

    def test_expired_token_raises(self):
        now = int(time.time())

        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(_sign_jwt({"sub": "user_abc", "exp": now - 300}))
        assert exc_info.value.status_code == 401
        assert "expired" in exc_info.value.detail.lower()

    def test_missing_sub_raises(self):
        now = int(time.time())

        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(_sign_jwt({"exp": now + 300}))
        assert exc_info.value.status_code == 401
        assert "sub" in exc_info.value.detail.lower()

    def test_wrong_secret_raises(self):
        now = int(time.time())
        token = _sign_jwt({"sub": "user_abc", "exp": now + 300}, secret="another-secret-with-thirty-two-bytes!")

        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(token)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail.startswith("Invalid token")


# ---------------------------------------------------------------------------
# Tests for admin detection
# ---------------------------------------------------------------------------
class TestIsAdminUser:
    def test_role_claim(self):
        assert is_admin_user(AuthenticatedUser("u1", {"sub": "u1", "role": "admin"})) is True

    def test_app_metadata_role(self):
        assert is_admin_user(AuthenticatedUser("u1", {"sub": "u1", "app_metadata": {"role": "admin"}})) is True

    def test_regular_user(self):
        assert is_admin_user(AuthenticatedUser("u1", {"sub": "u1"})) is False


# ---------------------------------------------------------------------------
# Tests for the FastAPI dependencies
# ---------------------------------------------------------------------------
class TestRequireAuth:
    async def test_valid_bearer_token(self):
        now = int(time.time())
        request = MagicMock()
        credentials = HTTPAuthorizationCredentials(
            scheme="Bearer", credentials=_sign_jwt({"sub": "user_abc", "exp": now + 300})
        )

        user = await require_auth(request, credentials)

        assert user.user_id == "user_abc"
        assert request.state.user_id == "user_abc"

    async def test_missing_credentials(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_auth(MagicMock(), None)
        assert exc_info.value.status_code == 401

    async def test_require_admin_rejects_regular_user(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_admin(AuthenticatedUser("u1", {"sub": "u1"}))
        assert exc_info.value.status_code == 403

    async def test_require_admin_accepts_admin(self):
        admin = AuthenticatedUser("u1", {"sub": "u1", "role": "admin"})
        assert await require_admin(admin) is admin
