"""Referral points balance and its immutable transaction ledger."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID

from entitlements.db.base import Base
from entitlements.domain.periods import utcnow

TRANSACTION_EARNED = "earned"
TRANSACTION_SPENT = "spent"
TRANSACTION_REFUNDED = "refunded"


class ReferralPointsBalance(Base):
    __tablename__ = "user_referral_points"
    __table_args__ = (CheckConstraint("points_balance >= 0", name="ck_points_balance_non_negative"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), unique=True, nullable=False, index=True)

    points_balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    total_referrals = Column(Integer, nullable=False, default=0)
    successful_referrals = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ReferralTransaction(Base):
    """One signed points movement. Never updated; the sum per user equals the balance."""

    __tablename__ = "referral_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)

    transaction_type = Column(String(20), nullable=False)  # earned | spent | refunded
    points = Column(Integer, nullable=False)  # signed delta
    balance_after = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)

    referral_id = Column(UUID(as_uuid=True), ForeignKey("referrals.id"), nullable=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("user_subscriptions.id"), nullable=True)
    reservation_id = Column(UUID(as_uuid=True), ForeignKey("redemption_reservations.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
