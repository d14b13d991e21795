"""Tests for the shared entitlement arithmetic."""

import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest

from entitlements.domain.entitlements import (
    SubscriptionState,
    carryover,
    effective_limit,
    fits_within,
    purchase_carryover,
    remaining,
    resolve_entitlements,
    study_plan_quota,
    subscription_state,
)

pytestmark = pytest.mark.unit


def make_tier(**overrides):
    fields = {
        "id": 1,
        "name": "free",
        "display_name": "Free",
        "token_limit": 50_000,
        "papers_limit": 2,
        "max_study_plans": 3,
        "max_subjects": None,
        "can_select_grade": False,
        "can_select_subjects": False,
        "chapter_wise_access": False,
        "can_access_study_plan": True,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def make_subscription(**overrides):
    fields = {
        "id": uuid.uuid4(),
        "status": "active",
        "cancel_at_period_end": False,
        "billing_cycle": "monthly",
        "is_recurring": True,
        "period_start_date": datetime(2030, 1, 1),
        "period_end_date": datetime(2030, 2, 1),
        "subscription_end_date": None,
        "token_limit_override": None,
        "tokens_used_current_period": 0,
        "papers_accessed_current_period": 0,
        "selected_grade_id": None,
        "selected_subject_ids": [],
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


# ============================================================================
# Effective limit and carryover
# ============================================================================


def test_override_above_tier_limit_is_carryover():
    assert carryover(60_000, 50_000) == 10_000
    assert effective_limit(60_000, 50_000) == 60_000


def test_no_override_means_tier_limit_and_no_carryover():
    assert carryover(None, 50_000) == 0
    assert effective_limit(None, 50_000) == 50_000


def test_override_below_tier_limit_has_no_carryover():
    assert carryover(40_000, 50_000) == 0
    assert effective_limit(40_000, 50_000) == 40_000


def test_unlimited_tier_has_no_carryover():
    assert carryover(60_000, None) == 0
    assert effective_limit(None, None) is None


def test_remaining_and_fits_within():
    assert remaining(50_000, 49_000) == 1_000
    assert remaining(50_000, 70_000) == 0
    assert remaining(None, 10) is None
    assert fits_within(50_000, 49_000, 1_000) is True
    assert fits_within(50_000, 49_000, 1_001) is False
    assert fits_within(None, 10**9, 10**9) is True


def test_purchase_carryover_adds_unused_tokens_to_new_limit():
    assert purchase_carryover(50_000, 20_000, 250_000) == 280_000


def test_purchase_carryover_none_when_nothing_left_or_unlimited():
    assert purchase_carryover(50_000, 50_000, 250_000) is None
    assert purchase_carryover(None, 0, 250_000) is None
    assert purchase_carryover(50_000, 0, None) is None


# ============================================================================
# resolve_entitlements
# ============================================================================


def test_resolve_entitlements_uses_override():
    tier = make_tier()
    subscription = make_subscription(token_limit_override=60_000, tokens_used_current_period=15_000)

    snapshot = resolve_entitlements(subscription, tier)

    assert snapshot.base_token_limit == 50_000
    assert snapshot.effective_token_limit == 60_000
    assert snapshot.token_carryover == 10_000
    assert snapshot.tokens_remaining == 45_000
    assert snapshot.papers_remaining == 2
    assert snapshot.state == SubscriptionState.ACTIVE


def test_resolve_entitlements_unlimited_tier():
    tier = make_tier(name="pro", token_limit=None, papers_limit=None, max_study_plans=None)
    snapshot = resolve_entitlements(make_subscription(tokens_used_current_period=10**7), tier)
    assert snapshot.effective_token_limit is None
    assert snapshot.tokens_remaining is None
    assert snapshot.papers_remaining is None


def test_subscription_state_transitions():
    assert subscription_state(None) == SubscriptionState.NON_EXISTENT
    assert subscription_state(make_subscription()) == SubscriptionState.ACTIVE
    assert subscription_state(make_subscription(cancel_at_period_end=True)) == SubscriptionState.PENDING_CANCELLATION
    assert subscription_state(make_subscription(status="inactive")) == SubscriptionState.EXPIRED


# ============================================================================
# Study plan quota
# ============================================================================


def test_study_plan_quota_at_two_of_three_allows_creation():
    quota = study_plan_quota(make_tier(max_study_plans=3), used=2)
    assert quota.can_create is True
    assert quota.remaining == 1


def test_study_plan_quota_at_three_of_three_blocks_creation():
    quota = study_plan_quota(make_tier(max_study_plans=3), used=3)
    assert quota.can_create is False
    assert quota.remaining == 0


def test_study_plan_quota_unlimited():
    quota = study_plan_quota(make_tier(max_study_plans=None), used=250)
    assert quota.limit is None
    assert quota.remaining is None
    assert quota.can_create is True


def test_study_plan_quota_without_access_is_zero():
    quota = study_plan_quota(make_tier(can_access_study_plan=False, max_study_plans=None), used=0)
    assert quota.limit == 0
    assert quota.can_create is False
