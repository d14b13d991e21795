"""RedemptionReservation model — points debited for a tier awaiting grade/subject selection."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from entitlements.db.base import Base
from entitlements.domain.periods import utcnow

RESERVATION_PENDING = "pending"
RESERVATION_FINALIZED = "finalized"
RESERVATION_CANCELLED = "cancelled"
RESERVATION_EXPIRED = "expired"
RESERVATION_SUPERSEDED = "superseded"


class RedemptionReservation(Base):
    __tablename__ = "redemption_reservations"
    __table_args__ = (
        Index(
            "ix_redemption_reservations_one_pending",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)

    tier_id = Column(Integer, ForeignKey("subscription_tiers.id"), nullable=False)
    tier = relationship("SubscriptionTier", lazy="joined")

    points_debited = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=RESERVATION_PENDING)
    expires_at = Column(DateTime, nullable=False)

    subscription_id = Column(UUID(as_uuid=True), ForeignKey("user_subscriptions.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)
