"""Referral codes and referrer/referred relationships."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID

from entitlements.db.base import Base
from entitlements.domain.periods import utcnow

REFERRAL_PENDING = "pending"
REFERRAL_COMPLETED = "completed"


class ReferralCode(Base):
    __tablename__ = "referral_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), unique=True, nullable=False, index=True)
    code = Column(String(16), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referrer_id = Column(String(255), nullable=False, index=True)
    referred_id = Column(String(255), unique=True, nullable=False, index=True)  # a user is referred at most once
    referral_code = Column(String(16), nullable=False)

    status = Column(String(20), nullable=False, default=REFERRAL_PENDING)  # pending | completed
    points_awarded = Column(Integer, nullable=False, default=0)
    subscription_tier_id = Column(Integer, ForeignKey("subscription_tiers.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
