"""Integration tests for referral codes and referral rewards."""

import pytest

from entitlements.core.exceptions import EntitlementError
from entitlements.schemas.subscription import PaymentOutcome
from entitlements.services.referral_service import CODE_ALPHABET, CODE_LENGTH, ReferralService, generate_referral_code
from entitlements.services.subscription_service import SubscriptionService
from entitlements.services.tier_catalog import TierCatalog

pytestmark = pytest.mark.integration


@pytest.fixture
def referrals(session_factory) -> ReferralService:
    return ReferralService(session_factory)


@pytest.fixture
def subscriptions(session_factory, referrals) -> SubscriptionService:
    return SubscriptionService(session_factory, referrals)


@pytest.fixture
async def tiers(session_factory) -> dict:
    return {tier.name: tier for tier in await TierCatalog(session_factory).list_tiers()}


@pytest.fixture
async def referrer_code(referrals) -> str:
    referral_code = await referrals.get_or_create_referral_code("referrer")
    return referral_code.code


def test_generated_codes_use_the_code_alphabet():
    code = generate_referral_code()
    assert len(code) == CODE_LENGTH
    assert set(code) <= set(CODE_ALPHABET)


# ============================================================================
# Codes
# ============================================================================


async def test_referral_code_is_stable_per_user(referrals):
    first = await referrals.get_or_create_referral_code("user-1")
    second = await referrals.get_or_create_referral_code("user-1")

    assert first.code == second.code
    assert len(first.code) == CODE_LENGTH


async def test_apply_referral_code_counts_referral(referrals, referrer_code):
    referral = await referrals.apply_referral_code("friend", referrer_code.lower())

    assert referral.referrer_id == "referrer"
    assert referral.status == "pending"
    balance = await referrals.get_balance("referrer")
    assert balance.total_referrals == 1
    assert balance.successful_referrals == 0
    assert balance.points_balance == 0


async def test_invalid_code_is_rejected(referrals):
    with pytest.raises(EntitlementError, match="Invalid referral code"):
        await referrals.apply_referral_code("friend", "NOPE1234")


async def test_own_code_is_rejected(referrals, referrer_code):
    with pytest.raises(EntitlementError, match="your own referral code"):
        await referrals.apply_referral_code("referrer", referrer_code)


async def test_code_can_only_be_applied_once(referrals, referrer_code):
    other = await referrals.get_or_create_referral_code("other-referrer")
    await referrals.apply_referral_code("friend", referrer_code)

    with pytest.raises(EntitlementError, match="already been applied"):
        await referrals.apply_referral_code("friend", other.code)


# ============================================================================
# Rewards
# ============================================================================


async def test_first_paid_conversion_credits_referrer(referrals, subscriptions, referrer_code, tiers):
    await referrals.apply_referral_code("friend", referrer_code)

    await subscriptions.apply_payment(
        PaymentOutcome(user_id="friend", tier_id=tiers["student"].id, payment_provider="stripe")
    )

    balance = await referrals.get_balance("referrer")
    assert balance.points_balance == 150
    assert balance.total_earned == 150
    assert balance.successful_referrals == 1

    transactions = await referrals.list_transactions("referrer")
    assert len(transactions) == 1
    assert transactions[0].transaction_type == "earned"
    assert transactions[0].points == 150
    assert transactions[0].balance_after == 150
    assert transactions[0].referral_id is not None


async def test_later_payments_do_not_credit_again(referrals, subscriptions, referrer_code, tiers):
    await referrals.apply_referral_code("friend", referrer_code)
    for tier_name in ("student", "pro"):
        await subscriptions.apply_payment(
            PaymentOutcome(user_id="friend", tier_id=tiers[tier_name].id, payment_provider="stripe")
        )

    balance = await referrals.get_balance("referrer")
    assert balance.points_balance == 150
    assert balance.successful_referrals == 1


async def test_tier_without_reward_keeps_referral_pending(referrals, subscriptions, referrer_code, tiers):
    await referrals.apply_referral_code("friend", referrer_code)

    await subscriptions.apply_payment(
        PaymentOutcome(user_id="friend", tier_id=tiers["free"].id, payment_provider="stripe")
    )
    assert (await referrals.get_balance("referrer")).points_balance == 0
    assert await referrals.pending_referrer("friend") == "referrer"

    await subscriptions.apply_payment(
        PaymentOutcome(user_id="friend", tier_id=tiers["student_lite"].id, payment_provider="stripe")
    )
    assert (await referrals.get_balance("referrer")).points_balance == 100
    assert await referrals.pending_referrer("friend") is None


async def test_award_for_conversion_outside_payment(referrals, referrer_code, tiers):
    await referrals.apply_referral_code("friend", referrer_code)

    referral = await referrals.award_for_conversion("friend", tiers["pro"])

    assert referral.status == "completed"
    assert referral.points_awarded == 250
    assert await referrals.award_for_conversion("friend", tiers["pro"]) is None
    assert (await referrals.get_balance("referrer")).points_balance == 250


async def test_credit_referral_credits_tier_reward(referrals, tiers):
    transaction = await referrals.credit_referral("referrer", tiers["student"])

    assert transaction.points == 150
    assert transaction.balance_after == 150


async def test_new_account_starts_empty(referrals):
    balance = await referrals.get_balance("new-user")

    assert balance.points_balance == 0
    assert balance.total_earned == 0
    assert await referrals.list_transactions("new-user") == []
