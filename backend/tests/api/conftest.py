"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from entitlements.core.auth import AuthenticatedUser, require_auth


def override_auth(user: AuthenticatedUser):
    async def _override():
        return user

    return _override


def make_user(user_id: str, **claims) -> AuthenticatedUser:
    return AuthenticatedUser(user_id=user_id, claims={"sub": user_id, **claims})


@pytest.fixture
def api_client(tmp_path):
    """FastAPI test client backed by a throwaway SQLite database.

    Initializes the global database via init_db inside the TestClient's
    own event loop so route handlers can use get_session_factory().
    """
    from fastapi import HTTPException
    from fastapi.middleware.cors import CORSMiddleware

    from entitlements.api.routes import api_router
    from entitlements.core.config import get_settings
    from entitlements.db import close_db, init_db
    from entitlements.db.seed import seed_subscription_tiers
    from entitlements.main import generic_exception_handler, http_exception_handler
    from entitlements.middleware.correlation import setup_correlation_middleware

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB in TestClient's event loop."""
        # Reset global so init_db creates a fresh engine in THIS loop
        import entitlements.db.base as db_mod

        db_mod._engine = None
        db_mod._session_factory = None
        await init_db(db_url, create_tables=True)
        await seed_subscription_tiers()
        yield
        await close_db()

    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Study Assistant Entitlements - Test Client",
        version="0.1.0",
        lifespan=test_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_correlation_middleware(app)

    # Exception handlers (needed for debug_id testing)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def as_user(api_client: TestClient):
    """Return a helper that authenticates subsequent requests as the given user."""

    def _as_user(user_id: str, **claims) -> AuthenticatedUser:
        user = make_user(user_id, **claims)
        api_client.app.dependency_overrides[require_auth] = override_auth(user)
        return user

    return _as_user
