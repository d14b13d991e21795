"""Idempotent seed data for subscription tiers."""

from decimal import Decimal

from sqlalchemy import select

from entitlements.db.base import get_session_factory
from entitlements.db.models.subscription_tier import SubscriptionTier

SUBSCRIPTION_TIERS = [
    {
        "name": "free",
        "display_name": "Free",
        "description": "Try the assistant with a small monthly allowance",
        "price_monthly": Decimal("0.00"),
        "price_yearly": Decimal("0.00"),
        "token_limit": 50_000,
        "papers_limit": 2,
        "max_study_plans": 1,
        "max_subjects": None,
        "can_select_grade": False,
        "can_select_subjects": False,
        "chapter_wise_access": False,
        "can_access_study_plan": True,
        "points_cost": 0,
        "referral_points_awarded": 0,
        "display_order": 1,
    },
    {
        "name": "student_lite",
        "display_name": "Student Lite",
        "description": "One subject, one grade, full access within it",
        "price_monthly": Decimal("5.00"),
        "price_yearly": Decimal("50.00"),
        "token_limit": 250_000,
        "papers_limit": None,
        "max_study_plans": 3,
        "max_subjects": 1,
        "can_select_grade": True,
        "can_select_subjects": True,
        "chapter_wise_access": True,
        "can_access_study_plan": True,
        "points_cost": 1000,
        "referral_points_awarded": 100,
        "display_order": 2,
    },
    {
        "name": "student",
        "display_name": "Student",
        "description": "Up to eight subjects for one grade",
        "price_monthly": Decimal("15.00"),
        "price_yearly": Decimal("150.00"),
        "token_limit": 500_000,
        "papers_limit": None,
        "max_study_plans": 10,
        "max_subjects": 8,
        "can_select_grade": True,
        "can_select_subjects": True,
        "chapter_wise_access": True,
        "can_access_study_plan": True,
        "points_cost": 1500,
        "referral_points_awarded": 150,
        "display_order": 3,
    },
    {
        "name": "pro",
        "display_name": "Pro",
        "description": "Unlimited tokens, papers and study plans across every grade",
        "price_monthly": Decimal("25.00"),
        "price_yearly": Decimal("250.00"),
        "token_limit": None,
        "papers_limit": None,
        "max_study_plans": None,
        "max_subjects": None,
        "can_select_grade": False,
        "can_select_subjects": False,
        "chapter_wise_access": True,
        "can_access_study_plan": True,
        "points_cost": 2500,
        "referral_points_awarded": 250,
        "display_order": 4,
    },
]


async def seed_subscription_tiers(session_factory=None) -> None:
    """Insert default subscription tiers if they don't already exist."""
    factory = session_factory or get_session_factory()

    async with factory() as session:
        for tier_data in SUBSCRIPTION_TIERS:
            result = await session.execute(
                select(SubscriptionTier).where(SubscriptionTier.name == tier_data["name"])
            )
            existing = result.scalar_one_or_none()

            if existing is None:
                session.add(SubscriptionTier(**tier_data))

        await session.commit()
