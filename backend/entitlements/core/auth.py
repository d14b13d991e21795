"""Bearer JWT authentication boundary for FastAPI.

Sessions are owned by the external auth service; this module only verifies
the signed access token it issues and exposes the caller's identity.
"""

from dataclasses import dataclass

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from entitlements.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Authenticated user extracted from an access token."""

    user_id: str
    claims: dict


def decode_access_token(token: str) -> AuthenticatedUser:
    """Verify and decode an access token.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    settings = get_settings()
    try:
        payload = pyjwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            options={
                "verify_exp": True,
                "require": ["sub", "exp"],
            },
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc}")
    except pyjwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    return AuthenticatedUser(user_id=str(sub), claims=payload)


def is_admin_user(user: AuthenticatedUser) -> bool:
    """Check the role claim for administrator privileges.

    Admins are the privileged accounts whose token usage is recorded
    but never blocked.
    """
    settings = get_settings()
    if user.claims.get("role") == settings.auth_admin_role:
        return True
    app_metadata = user.claims.get("app_metadata") or {}
    return app_metadata.get("role") == settings.auth_admin_role


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """FastAPI dependency that extracts and validates the bearer token.

    Usage::

        @router.get("/protected")
        async def protected(user: AuthenticatedUser = Depends(require_auth)):
            ...
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    user = decode_access_token(credentials.credentials)

    # Set user_id on request state for downstream use (error handlers, audit logging)
    request.state.user_id = user.user_id

    return user


async def require_admin(user: AuthenticatedUser = Depends(require_auth)) -> AuthenticatedUser:
    """FastAPI dependency that requires admin privileges."""
    if not is_admin_user(user):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
