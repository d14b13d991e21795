"""UserSubscription model — one row per subscription, at most one active per user."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from entitlements.db.base import Base
from entitlements.domain.periods import utcnow

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_INACTIVE = "inactive"


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    __table_args__ = (
        # Storage-level guarantee: a second active row for a user fails with IntegrityError
        Index(
            "ix_user_subscriptions_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)

    tier_id = Column(Integer, ForeignKey("subscription_tiers.id"), nullable=False)
    tier = relationship("SubscriptionTier", lazy="joined")

    status = Column(String(20), nullable=False, default=SUBSCRIPTION_ACTIVE)

    # Billing
    billing_cycle = Column(String(20), nullable=False, default="monthly")  # monthly | yearly | lifetime
    is_recurring = Column(Boolean, nullable=False, default=True)
    payment_provider = Column(String(50), nullable=True)  # stripe, paypal, bank_transfer, points
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=True)  # fixed end for non-recurring subscriptions
    subscription_end_date = Column(DateTime, nullable=True)  # end of a yearly commitment

    # Current usage period
    period_start_date = Column(DateTime, nullable=False, default=utcnow)
    period_end_date = Column(DateTime, nullable=True)
    tokens_used_current_period = Column(Integer, nullable=False, default=0)
    token_limit_override = Column(Integer, nullable=True)  # admin grant / carryover; NULL = tier limit
    papers_accessed_current_period = Column(Integer, nullable=False, default=0)

    # Grade/subject scope for tiers that allow selection
    selected_grade_id = Column(String(255), nullable=True)
    selected_subject_ids = Column(JSON, nullable=False, default=list)

    # Cancellation
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancellation_reason = Column(Text, nullable=True)
    cancellation_requested_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
