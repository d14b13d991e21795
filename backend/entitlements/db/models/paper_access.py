"""PaperAccess model — which exam papers a subscription opened in a period."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from entitlements.db.base import Base
from entitlements.domain.periods import utcnow


class PaperAccess(Base):
    __tablename__ = "paper_accesses"
    __table_args__ = (
        UniqueConstraint("subscription_id", "period_start_date", "paper_id", name="uq_paper_access_per_period"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    period_start_date = Column(DateTime, nullable=False)
    paper_id = Column(String(255), nullable=False)
    accessed_at = Column(DateTime, nullable=False, default=utcnow)
