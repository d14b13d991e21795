"""Referral and redemption Pydantic schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from entitlements.schemas.results import OperationResult
from entitlements.schemas.subscription import EntitlementsResponse


class RedeemRequest(BaseModel):
    tier_id: int


class FinalizeRedemptionRequest(BaseModel):
    grade_id: str | None = None
    subject_ids: list[str] = Field(default_factory=list)
    reservation_id: uuid.UUID | None = None


class ReservationResponse(BaseModel):
    id: str
    tier_id: int
    tier_name: str
    points_debited: int
    status: str
    expires_at: datetime


class RedemptionResult(OperationResult):
    requires_selection: bool = False
    reservation: ReservationResponse | None = None
    subscription: EntitlementsResponse | None = None
    points_balance: int | None = None


class ApplyReferralRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class ReferralCodeResult(OperationResult):
    code: str | None = None


class PointsBalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    points_balance: int
    total_earned: int
    total_spent: int
    total_referrals: int
    successful_referrals: int


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_type: str
    points: int
    balance_after: int
    description: str | None
    created_at: datetime
