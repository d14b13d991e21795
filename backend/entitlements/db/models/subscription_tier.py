"""SubscriptionTier model — plan catalog reference data."""

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text

from entitlements.db.base import Base
from entitlements.domain.periods import utcnow


class SubscriptionTier(Base):
    __tablename__ = "subscription_tiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    # Pricing
    price_monthly = Column(Numeric(10, 2), nullable=False, default=0)
    price_yearly = Column(Numeric(10, 2), nullable=False, default=0)

    # Limits (NULL = unlimited)
    token_limit = Column(Integer, nullable=True)
    papers_limit = Column(Integer, nullable=True)
    max_study_plans = Column(Integer, nullable=True)
    max_subjects = Column(Integer, nullable=True)

    # Feature flags
    can_select_grade = Column(Boolean, nullable=False, default=False)
    can_select_subjects = Column(Boolean, nullable=False, default=False)
    chapter_wise_access = Column(Boolean, nullable=False, default=False)
    can_access_study_plan = Column(Boolean, nullable=False, default=False)

    # Referral economy (points_cost 0 = not redeemable)
    points_cost = Column(Integer, nullable=False, default=0)
    referral_points_awarded = Column(Integer, nullable=False, default=0)

    # Catalog presentation; display_order doubles as the upgrade ordering
    display_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    coming_soon = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def price(self):
        return self.price_monthly

    @property
    def requires_selection(self) -> bool:
        """Whether activating this tier needs a grade/subject choice first."""
        return bool(self.can_select_grade or self.can_select_subjects)

    @property
    def is_redeemable(self) -> bool:
        return (self.points_cost or 0) > 0
