"""TierCatalog — read-only lookup of subscription tiers."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.core.config import get_settings
from entitlements.core.exceptions import TierNotFoundError
from entitlements.db.models.subscription_tier import SubscriptionTier


async def fetch_tier(session: AsyncSession, tier_id: int) -> SubscriptionTier:
    tier = await session.get(SubscriptionTier, tier_id)
    if tier is None or not tier.is_active:
        raise TierNotFoundError(str(tier_id))
    return tier


async def fetch_tier_by_name(session: AsyncSession, name: str) -> SubscriptionTier:
    result = await session.execute(select(SubscriptionTier).where(SubscriptionTier.name == name))
    tier = result.scalar_one_or_none()
    if tier is None or not tier.is_active:
        raise TierNotFoundError(name)
    return tier


async def fetch_free_tier(session: AsyncSession) -> SubscriptionTier:
    return await fetch_tier_by_name(session, get_settings().free_tier_name)


class TierCatalog:
    """Read-only access to the tier catalog."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_tier(self, tier_id: int) -> SubscriptionTier:
        async with self.session_factory() as session:
            return await fetch_tier(session, tier_id)

    async def get_tier_by_name(self, name: str) -> SubscriptionTier:
        async with self.session_factory() as session:
            return await fetch_tier_by_name(session, name)

    async def list_tiers(self, include_inactive: bool = False) -> list[SubscriptionTier]:
        """All tiers ordered for display (and upgrade ordering)."""
        async with self.session_factory() as session:
            stmt = select(SubscriptionTier).order_by(SubscriptionTier.display_order, SubscriptionTier.id)
            if not include_inactive:
                stmt = stmt.where(SubscriptionTier.is_active.is_(True))
            result = await session.execute(stmt)
            return list(result.scalars().all())
