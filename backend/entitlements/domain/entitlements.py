"""Entitlement resolution.

The one place that derives effective limits, carryover and remaining
quota from a subscription and its tier. Every read path (API responses,
quota gates, admin views) goes through these functions instead of
re-deriving the arithmetic.

Pure functions -- no DB access. ``None`` limits mean unlimited.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class SubscriptionState(StrEnum):
    """Lifecycle state derived from the persisted subscription row."""

    NON_EXISTENT = "non_existent"
    ACTIVE = "active"
    PENDING_CANCELLATION = "pending_cancellation"
    EXPIRED = "expired"


def effective_limit(token_limit_override: int | None, tier_token_limit: int | None) -> int | None:
    """Override wins when present, otherwise the tier's base limit."""
    if token_limit_override is not None:
        return token_limit_override
    return tier_token_limit


def carryover(token_limit_override: int | None, tier_token_limit: int | None) -> int:
    """Quota granted above the tier's base limit.

    Example: tier 50_000, override 60_000 -> 10_000.
    """
    if token_limit_override is None or tier_token_limit is None:
        return 0
    return max(0, token_limit_override - tier_token_limit)


def remaining(limit: int | None, used: int) -> int | None:
    if limit is None:
        return None
    return max(0, limit - (used or 0))


def fits_within(limit: int | None, used: int, amount: int) -> bool:
    """Whether consuming ``amount`` more keeps ``used`` at or under ``limit``."""
    if limit is None:
        return True
    return (used or 0) + amount <= limit


def effective_token_limit(subscription, tier) -> int | None:
    return effective_limit(subscription.token_limit_override, tier.token_limit)


def token_carryover(subscription, tier) -> int:
    return carryover(subscription.token_limit_override, tier.token_limit)


def purchase_carryover(old_effective_limit: int | None, old_tokens_used: int, new_tier_limit: int | None) -> int | None:
    """Token override for a subscription replacing one with unused tokens.

    Unused tokens from the previous period are added on top of the new
    tier's limit. Unlimited on either side means no override.

    Returns:
        The new ``token_limit_override``, or None when nothing carries over.
    """
    if old_effective_limit is None or new_tier_limit is None:
        return None
    unused = max(0, old_effective_limit - (old_tokens_used or 0))
    if unused == 0:
        return None
    return new_tier_limit + unused


def subscription_state(subscription) -> SubscriptionState:
    if subscription is None:
        return SubscriptionState.NON_EXISTENT
    if subscription.status != "active":
        return SubscriptionState.EXPIRED
    if subscription.cancel_at_period_end:
        return SubscriptionState.PENDING_CANCELLATION
    return SubscriptionState.ACTIVE


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Everything a client needs to render plan, limits and usage."""

    subscription_id: str
    tier_id: int
    tier_name: str
    tier_display_name: str
    state: SubscriptionState
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


def resolve_entitlements(subscription, tier) -> EntitlementSnapshot:
    """Build the full entitlement view of an active subscription."""
    limit = effective_token_limit(subscription, tier)
    tokens_used = subscription.tokens_used_current_period or 0
    papers_used = subscription.papers_accessed_current_period or 0
    return EntitlementSnapshot(
        subscription_id=str(subscription.id),
        tier_id=tier.id,
        tier_name=tier.name,
        tier_display_name=tier.display_name,
        state=subscription_state(subscription),
        billing_cycle=subscription.billing_cycle,
        is_recurring=bool(subscription.is_recurring),
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        period_start_date=subscription.period_start_date,
        period_end_date=subscription.period_end_date,
        subscription_end_date=subscription.subscription_end_date,
        base_token_limit=tier.token_limit,
        effective_token_limit=limit,
        token_carryover=token_carryover(subscription, tier),
        tokens_used=tokens_used,
        tokens_remaining=remaining(limit, tokens_used),
        papers_limit=tier.papers_limit,
        papers_used=papers_used,
        papers_remaining=remaining(tier.papers_limit, papers_used),
        max_subjects=tier.max_subjects,
        max_study_plans=tier.max_study_plans,
        can_select_grade=bool(tier.can_select_grade),
        can_select_subjects=bool(tier.can_select_subjects),
        chapter_wise_access=bool(tier.chapter_wise_access),
        can_access_study_plan=bool(tier.can_access_study_plan),
        selected_grade_id=subscription.selected_grade_id,
        selected_subject_ids=list(subscription.selected_subject_ids or []),
    )


@dataclass(frozen=True)
class StudyPlanQuota:
    """Lifetime study plan allowance. ``limit``/``remaining`` None means unlimited."""

    limit: int | None
    used: int
    remaining: int | None
    can_create: bool


def study_plan_quota(tier, used: int) -> StudyPlanQuota:
    """Compare the lifetime plan count against the tier's ``max_study_plans``.

    Tiers without study plan access get a limit of 0.
    """
    limit = tier.max_study_plans if tier.can_access_study_plan else 0
    return StudyPlanQuota(
        limit=limit,
        used=used,
        remaining=remaining(limit, used),
        can_create=fits_within(limit, used, 1),
    )
