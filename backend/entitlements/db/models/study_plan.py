"""StudyPlanSchedule model — counts toward the tier's lifetime study plan quota."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.dialects.postgresql import UUID

from entitlements.db.base import Base
from entitlements.domain.periods import utcnow


class StudyPlanSchedule(Base):
    __tablename__ = "study_plan_schedules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    subject_id = Column(String(255), nullable=False)
    grade_id = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False, default="")

    # Soft delete only: deactivated plans still count toward the quota
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    deactivated_at = Column(DateTime, nullable=True)
