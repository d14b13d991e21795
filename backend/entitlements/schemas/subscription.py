"""Subscription, tier and admin Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from entitlements.domain.periods import BillingCycle
from entitlements.schemas.results import OperationResult


class TierResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    display_name: str
    description: str | None
    price_monthly: Decimal
    price_yearly: Decimal
    token_limit: int | None  # None = unlimited
    papers_limit: int | None
    max_study_plans: int | None
    max_subjects: int | None
    can_select_grade: bool
    can_select_subjects: bool
    chapter_wise_access: bool
    can_access_study_plan: bool
    points_cost: int
    referral_points_awarded: int
    display_order: int
    coming_soon: bool


class EntitlementsResponse(BaseModel):
    """Resolved plan, limits and usage for the active subscription."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    tier_id: int
    tier_name: str
    tier_display_name: str
    state: str
    billing_cycle: str | None
    is_recurring: bool
    cancel_at_period_end: bool
    period_start_date: datetime | None
    period_end_date: datetime | None
    subscription_end_date: datetime | None
    base_token_limit: int | None
    effective_token_limit: int | None
    token_carryover: int
    tokens_used: int
    tokens_remaining: int | None
    papers_limit: int | None
    papers_used: int
    papers_remaining: int | None
    max_subjects: int | None
    max_study_plans: int | None
    can_select_grade: bool
    can_select_subjects: bool
    chapter_wise_access: bool
    can_access_study_plan: bool
    selected_grade_id: str | None
    selected_subject_ids: list[str]


class SubscriptionResult(OperationResult):
    subscription: EntitlementsResponse | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class SelectionsRequest(BaseModel):
    grade_id: str | None = None
    subject_ids: list[str] = Field(default_factory=list)


# ── Admin / collaborator payloads ───────────────────────────────────


class PaymentOutcome(BaseModel):
    """Outcome of a charge reported by the payment gateway."""

    user_id: str
    tier_id: int
    status: Literal["completed", "failed", "cancelled", "pending"] = "completed"
    payment_provider: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    is_recurring: bool | None = None  # None = derived from the provider
    renewal_date: datetime | None = None
    end_date: datetime | None = None
    reference: str | None = None
    failure_reason: str | None = None


class TokenOverrideRequest(BaseModel):
    token_limit_override: int | None = Field(default=None, ge=0)  # None clears the override


class RolloverRequest(BaseModel):
    now: datetime | None = None


class RolloverResult(OperationResult):
    rolled_over: int = 0
    expired: int = 0
    reservations_expired: int = 0
