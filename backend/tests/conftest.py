"""Shared test fixtures for all test groups."""

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from entitlements.db.base import build_engine, build_session_factory, create_schema
from entitlements.db.seed import seed_subscription_tiers
from entitlements.domain.periods import utcnow
from entitlements.services.operations import EntitlementOperations
from entitlements.services.referral_service import ReferralService, credit_points


def sqlite_url(tmp_path) -> str:
    """File-backed SQLite so concurrent sessions get their own connections."""
    return f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}"


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """Create a fresh SQLite database with seeded tiers.

    Sets the global session factory so code that calls
    get_session_factory() sees the test database.
    """
    import entitlements.db.base as db_mod

    engine = build_engine(sqlite_url(tmp_path))
    await create_schema(engine)

    factory = build_session_factory(engine)
    db_mod._engine = engine
    db_mod._session_factory = factory

    await seed_subscription_tiers(factory)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def operations(session_factory) -> EntitlementOperations:
    return EntitlementOperations(session_factory)


@pytest.fixture
def grant_points(session_factory):
    """Return a helper that credits points to a user through the ledger."""

    async def _grant(user_id: str, points: int) -> int:
        await ReferralService(session_factory).ensure_account(user_id)
        async with session_factory() as session:
            transaction = await credit_points(session, user_id, points, "Test grant", utcnow())
            await session.commit()
            return transaction.balance_after

    return _grant
