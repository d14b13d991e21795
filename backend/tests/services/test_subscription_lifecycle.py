"""Integration tests for SubscriptionService: provisioning, cancellation, payments and period boundaries."""

import asyncio
from datetime import timedelta

import pytest
from dateutil.relativedelta import relativedelta
from sqlalchemy import func, select

from entitlements.core.exceptions import (
    EntitlementError,
    ExternalServiceFailureError,
    InvalidSelectionError,
    NoActiveSubscriptionError,
)
from entitlements.db.models.user_subscription import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_INACTIVE, UserSubscription
from entitlements.domain.entitlements import SubscriptionState, resolve_entitlements
from entitlements.domain.periods import TransitionAction, utcnow
from entitlements.schemas.subscription import PaymentOutcome
from entitlements.services.subscription_service import SubscriptionService
from entitlements.services.tier_catalog import TierCatalog
from entitlements.services.usage_service import UsageService

pytestmark = pytest.mark.integration


@pytest.fixture
def subscriptions(session_factory) -> SubscriptionService:
    return SubscriptionService(session_factory)


@pytest.fixture
def usage(session_factory) -> UsageService:
    return UsageService(session_factory)


@pytest.fixture
def catalog(session_factory) -> TierCatalog:
    return TierCatalog(session_factory)


async def count_rows(session_factory, user_id: str, status: str) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count())
            .select_from(UserSubscription)
            .where(UserSubscription.user_id == user_id, UserSubscription.status == status)
        )
        return result.scalar_one()


# ============================================================================
# Tier catalog
# ============================================================================


async def test_list_tiers_is_ordered_for_display(catalog):
    tiers = await catalog.list_tiers()
    assert [t.name for t in tiers] == ["free", "student_lite", "student", "pro"]


async def test_seed_is_idempotent(session_factory, catalog):
    from entitlements.db.seed import seed_subscription_tiers

    await seed_subscription_tiers(session_factory)
    assert len(await catalog.list_tiers()) == 4


# ============================================================================
# ensure_subscription
# ============================================================================


async def test_ensure_subscription_provisions_free_tier(subscriptions):
    subscription = await subscriptions.ensure_subscription("user-1")

    assert subscription.tier.name == "free"
    assert subscription.status == SUBSCRIPTION_ACTIVE
    assert subscription.billing_cycle == "monthly"
    assert subscription.tokens_used_current_period == 0
    assert subscription.period_end_date == subscription.period_start_date + relativedelta(months=1)


async def test_ensure_subscription_is_idempotent(subscriptions, session_factory):
    first = await subscriptions.ensure_subscription("user-1")
    second = await subscriptions.ensure_subscription("user-1")

    assert first.id == second.id
    assert await count_rows(session_factory, "user-1", SUBSCRIPTION_ACTIVE) == 1


async def test_concurrent_ensure_creates_exactly_one_row(subscriptions, session_factory):
    results = await asyncio.gather(*[subscriptions.ensure_subscription("user-1") for _ in range(5)])

    assert len({r.id for r in results}) == 1
    assert await count_rows(session_factory, "user-1", SUBSCRIPTION_ACTIVE) == 1


async def test_get_entitlements_resolves_free_tier(subscriptions):
    snapshot = await subscriptions.get_entitlements("user-1")

    assert snapshot.tier_name == "free"
    assert snapshot.effective_token_limit == 50_000
    assert snapshot.token_carryover == 0
    assert snapshot.papers_remaining == 2
    assert snapshot.state == SubscriptionState.ACTIVE


# ============================================================================
# Cancellation and reactivation
# ============================================================================


async def test_cancel_then_reactivate_keeps_period_bounds(subscriptions):
    original = await subscriptions.ensure_subscription("user-1")

    cancelled = await subscriptions.cancel_at_period_end("user-1", reason="too expensive")
    assert cancelled.cancel_at_period_end is True
    assert cancelled.cancellation_reason == "too expensive"
    assert cancelled.is_recurring is False
    assert resolve_entitlements(cancelled, cancelled.tier).state == SubscriptionState.PENDING_CANCELLATION

    reactivated = await subscriptions.reactivate("user-1")
    assert reactivated.cancel_at_period_end is False
    assert reactivated.cancellation_reason is None
    assert reactivated.is_recurring is True
    assert reactivated.period_start_date == original.period_start_date
    assert reactivated.period_end_date == original.period_end_date
    assert reactivated.id == original.id


async def test_cancel_twice_is_rejected(subscriptions):
    await subscriptions.ensure_subscription("user-1")
    await subscriptions.cancel_at_period_end("user-1")

    with pytest.raises(EntitlementError, match="already scheduled"):
        await subscriptions.cancel_at_period_end("user-1")


async def test_reactivate_without_pending_cancellation_is_rejected(subscriptions):
    await subscriptions.ensure_subscription("user-1")

    with pytest.raises(EntitlementError, match="not scheduled"):
        await subscriptions.reactivate("user-1")


async def test_reactivate_after_boundary_is_rejected(subscriptions):
    subscription = await subscriptions.ensure_subscription("user-1")
    await subscriptions.cancel_at_period_end("user-1")

    with pytest.raises(EntitlementError, match="already taken effect"):
        await subscriptions.reactivate("user-1", now=subscription.period_end_date)


async def test_cancel_without_subscription_is_rejected(subscriptions):
    with pytest.raises(NoActiveSubscriptionError):
        await subscriptions.cancel_at_period_end("nobody")


async def test_cancelled_subscription_is_replaced_by_free_tier_after_boundary(subscriptions, session_factory):
    original = await subscriptions.ensure_subscription("user-1")
    await subscriptions.cancel_at_period_end("user-1")

    replacement = await subscriptions.ensure_subscription("user-1", now=original.period_end_date)

    assert replacement.id != original.id
    assert replacement.tier.name == "free"
    assert await count_rows(session_factory, "user-1", SUBSCRIPTION_ACTIVE) == 1
    assert await count_rows(session_factory, "user-1", SUBSCRIPTION_INACTIVE) == 1


async def test_concurrent_ensure_at_cancellation_boundary_returns_replacement(subscriptions, session_factory):
    for user_id in ("user-1", "user-2", "user-3"):
        original = await subscriptions.ensure_subscription(user_id)
        await subscriptions.cancel_at_period_end(user_id)

        results = await asyncio.gather(
            *[subscriptions.ensure_subscription(user_id, now=original.period_end_date) for _ in range(4)]
        )

        replacement = await subscriptions.ensure_subscription(user_id, now=original.period_end_date)
        assert replacement.id != original.id
        assert {r.id for r in results} == {replacement.id}
        assert all(r.status == SUBSCRIPTION_ACTIVE and not r.cancel_at_period_end for r in results)
        assert await count_rows(session_factory, user_id, SUBSCRIPTION_ACTIVE) == 1
        assert await count_rows(session_factory, user_id, SUBSCRIPTION_INACTIVE) == 1


# ============================================================================
# Selections
# ============================================================================


async def test_free_tier_rejects_selections(subscriptions):
    await subscriptions.ensure_subscription("user-1")

    with pytest.raises(InvalidSelectionError):
        await subscriptions.update_selections("user-1", "grade-10", ["math"])


async def test_selections_are_set_once(subscriptions, catalog):
    student = await catalog.get_tier_by_name("student")
    await subscriptions.apply_payment(
        PaymentOutcome(user_id="user-1", tier_id=student.id, payment_provider="stripe")
    )

    updated = await subscriptions.update_selections("user-1", "grade-10", ["math", "physics", "math"])
    assert updated.selected_grade_id == "grade-10"
    assert updated.selected_subject_ids == ["math", "physics"]

    with pytest.raises(InvalidSelectionError, match="already set"):
        await subscriptions.update_selections("user-1", "grade-11", ["chemistry"])


# ============================================================================
# Payments
# ============================================================================


async def test_failed_payment_leaves_subscription_unchanged(subscriptions, catalog):
    original = await subscriptions.ensure_subscription("user-1")
    student = await catalog.get_tier_by_name("student")

    with pytest.raises(ExternalServiceFailureError) as excinfo:
        await subscriptions.apply_payment(
            PaymentOutcome(
                user_id="user-1",
                tier_id=student.id,
                payment_provider="stripe",
                status="failed",
                failure_reason="card declined",
            )
        )

    assert excinfo.value.code == "external_service_failure"
    assert "card declined" in excinfo.value.message
    current = await subscriptions.ensure_subscription("user-1")
    assert current.id == original.id
    assert current.tier.name == "free"


async def test_payment_carries_unused_tokens_into_new_tier(subscriptions, usage, catalog, session_factory):
    await subscriptions.ensure_subscription("user-1")
    await usage.charge_tokens("user-1", 20_000)
    student_lite = await catalog.get_tier_by_name("student_lite")

    upgraded = await subscriptions.apply_payment(
        PaymentOutcome(user_id="user-1", tier_id=student_lite.id, payment_provider="stripe")
    )

    assert upgraded.tier.name == "student_lite"
    assert upgraded.token_limit_override == 280_000
    assert upgraded.tokens_used_current_period == 0
    assert upgraded.is_recurring is True
    snapshot = resolve_entitlements(upgraded, upgraded.tier)
    assert snapshot.token_carryover == 30_000
    assert await count_rows(session_factory, "user-1", SUBSCRIPTION_ACTIVE) == 1
    assert await count_rows(session_factory, "user-1", SUBSCRIPTION_INACTIVE) == 1


async def test_payment_into_unlimited_tier_has_no_override(subscriptions, catalog):
    await subscriptions.ensure_subscription("user-1")
    pro = await catalog.get_tier_by_name("pro")

    upgraded = await subscriptions.apply_payment(
        PaymentOutcome(user_id="user-1", tier_id=pro.id, payment_provider="stripe")
    )

    assert upgraded.token_limit_override is None
    assert resolve_entitlements(upgraded, upgraded.tier).effective_token_limit is None


async def test_manual_payment_is_fixed_term(subscriptions, catalog):
    now = utcnow()
    student = await catalog.get_tier_by_name("student")

    subscription = await subscriptions.apply_payment(
        PaymentOutcome(user_id="user-1", tier_id=student.id, payment_provider="bank_transfer"),
        now=now,
    )

    assert subscription.is_recurring is False
    assert subscription.end_date == now + relativedelta(months=1)
    assert subscription.period_end_date == now + relativedelta(months=1)


async def test_yearly_payment_uses_renewal_date_as_commitment_end(subscriptions, catalog):
    now = utcnow()
    renewal = now + relativedelta(years=1)
    student = await catalog.get_tier_by_name("student")

    subscription = await subscriptions.apply_payment(
        PaymentOutcome(
            user_id="user-1",
            tier_id=student.id,
            payment_provider="stripe",
            billing_cycle="yearly",
            renewal_date=renewal,
        ),
        now=now,
    )

    assert subscription.billing_cycle == "yearly"
    assert subscription.subscription_end_date == renewal
    assert subscription.period_end_date == now + relativedelta(months=1)


async def test_cancelled_yearly_keeps_access_until_commitment_end(subscriptions, catalog):
    now = utcnow()
    student = await catalog.get_tier_by_name("student")
    subscription = await subscriptions.apply_payment(
        PaymentOutcome(user_id="user-1", tier_id=student.id, payment_provider="stripe", billing_cycle="yearly"),
        now=now,
    )
    await subscriptions.cancel_at_period_end("user-1", now=now)

    after_first_month = await subscriptions.ensure_subscription("user-1", now=subscription.period_end_date)
    assert after_first_month.id == subscription.id
    assert after_first_month.tier.name == "student"

    after_year = await subscriptions.ensure_subscription("user-1", now=subscription.subscription_end_date)
    assert after_year.tier.name == "free"


# ============================================================================
# Token override
# ============================================================================


async def test_grant_token_override(subscriptions):
    await subscriptions.ensure_subscription("user-1")

    subscription = await subscriptions.grant_token_override("user-1", 60_000)
    snapshot = resolve_entitlements(subscription, subscription.tier)
    assert snapshot.effective_token_limit == 60_000
    assert snapshot.token_carryover == 10_000

    cleared = await subscriptions.grant_token_override("user-1", None)
    assert cleared.token_limit_override is None


async def test_negative_token_override_is_rejected(subscriptions):
    await subscriptions.ensure_subscription("user-1")

    with pytest.raises(EntitlementError, match="non-negative"):
        await subscriptions.grant_token_override("user-1", -1)


# ============================================================================
# Period boundaries
# ============================================================================


async def test_rollover_resets_counters_and_override(subscriptions, usage):
    original = await subscriptions.ensure_subscription("user-1")
    await subscriptions.grant_token_override("user-1", 60_000)
    await usage.charge_tokens("user-1", 55_000)
    await usage.record_paper_access("user-1", "paper-1")

    transition = await subscriptions.apply_period_rollover("user-1", now=original.period_end_date)

    assert transition.action == TransitionAction.ROLLOVER
    current = await subscriptions.ensure_subscription("user-1", now=original.period_end_date)
    assert current.id == original.id
    assert current.period_start_date == original.period_end_date
    assert current.tokens_used_current_period == 0
    assert current.papers_accessed_current_period == 0
    assert current.token_limit_override is None


async def test_rollover_is_applied_once(subscriptions):
    original = await subscriptions.ensure_subscription("user-1")

    first = await subscriptions.apply_period_rollover("user-1", now=original.period_end_date)
    second = await subscriptions.apply_period_rollover("user-1", now=original.period_end_date)

    assert first.action == TransitionAction.ROLLOVER
    assert second.action == TransitionAction.NONE


async def test_concurrent_ensure_at_period_boundary_sees_new_period(subscriptions, usage, session_factory):
    for user_id in ("user-1", "user-2", "user-3"):
        original = await subscriptions.ensure_subscription(user_id)
        await usage.charge_tokens(user_id, 100)

        results = await asyncio.gather(
            *[subscriptions.ensure_subscription(user_id, now=original.period_end_date) for _ in range(4)]
        )

        for subscription in results:
            assert subscription.id == original.id
            assert subscription.period_start_date == original.period_end_date
            assert subscription.tokens_used_current_period == 0
        assert await count_rows(session_factory, user_id, SUBSCRIPTION_ACTIVE) == 1


async def test_process_period_boundaries_sweeps_due_subscriptions(subscriptions, session_factory):
    start = utcnow()
    rolling = await subscriptions.ensure_subscription("rolling", now=start)
    await subscriptions.ensure_subscription("cancelling", now=start)
    await subscriptions.cancel_at_period_end("cancelling", now=start)
    await subscriptions.ensure_subscription("recent", now=start + timedelta(days=20))

    counts = await subscriptions.process_period_boundaries(now=rolling.period_end_date)

    assert counts == {"rolled_over": 1, "expired": 1}
    assert await count_rows(session_factory, "cancelling", SUBSCRIPTION_ACTIVE) == 0
    assert await count_rows(session_factory, "recent", SUBSCRIPTION_ACTIVE) == 1

    # A second sweep at the same instant finds nothing left to do
    assert await subscriptions.process_period_boundaries(now=rolling.period_end_date) == {
        "rolled_over": 0,
        "expired": 0,
    }
