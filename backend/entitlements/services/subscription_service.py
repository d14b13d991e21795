"""SubscriptionService — owns the one-active-subscription-per-user lifecycle."""

from datetime import datetime

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.core.config import get_settings
from entitlements.core.exceptions import (
    ConcurrentModificationError,
    EntitlementError,
    ExternalServiceFailureError,
    InvalidSelectionError,
    NoActiveSubscriptionError,
)
from entitlements.db.models.subscription_tier import SubscriptionTier
from entitlements.db.models.user_subscription import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_INACTIVE,
    UserSubscription,
)
from entitlements.domain.entitlements import (
    EntitlementSnapshot,
    effective_token_limit,
    purchase_carryover,
    resolve_entitlements,
)
from entitlements.domain.periods import (
    BillingCycle,
    PeriodTransition,
    TransitionAction,
    as_naive_utc,
    cancellation_boundary,
    initial_period,
    rollover_period,
    utcnow,
)
from entitlements.domain.selections import selections_locked, validate_selection
from entitlements.services.referral_service import ReferralService, complete_referral
from entitlements.services.tier_catalog import fetch_free_tier, fetch_tier

logger = structlog.get_logger(__name__)


# ── Session-level helpers (shared with usage and redemption) ────────


async def lock_user(session: AsyncSession, user_id: str, now: datetime) -> bool:
    """Take the per-user write lock by touching the active subscription row.

    Returns:
        False when the user has no active subscription (nothing was locked)
    """
    result = await session.execute(
        update(UserSubscription)
        .where(UserSubscription.user_id == user_id, UserSubscription.status == SUBSCRIPTION_ACTIVE)
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def fetch_active_subscription(session: AsyncSession, user_id: str) -> UserSubscription | None:
    result = await session.execute(
        select(UserSubscription)
        .where(UserSubscription.user_id == user_id, UserSubscription.status == SUBSCRIPTION_ACTIVE)
        .execution_options(populate_existing=True)
    )
    return result.unique().scalar_one_or_none()


async def require_active_subscription(session: AsyncSession, user_id: str) -> UserSubscription:
    subscription = await fetch_active_subscription(session, user_id)
    if subscription is None:
        raise NoActiveSubscriptionError()
    return subscription


def _new_subscription(
    user_id: str,
    tier: SubscriptionTier,
    now: datetime,
    *,
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    is_recurring: bool = True,
    payment_provider: str | None = None,
    end_date: datetime | None = None,
    subscription_end_date: datetime | None = None,
    period_end_date: datetime | None = None,
    token_limit_override: int | None = None,
    selected_grade_id: str | None = None,
    selected_subject_ids: list[str] | None = None,
) -> UserSubscription:
    bounds = initial_period(billing_cycle, now)
    period_end = period_end_date or bounds.period_end_date
    if end_date is not None:
        period_end = min(period_end, end_date)
    return UserSubscription(
        user_id=user_id,
        tier_id=tier.id,
        tier=tier,
        status=SUBSCRIPTION_ACTIVE,
        billing_cycle=str(billing_cycle),
        is_recurring=is_recurring,
        payment_provider=payment_provider,
        start_date=now,
        end_date=end_date,
        subscription_end_date=subscription_end_date or bounds.subscription_end_date,
        period_start_date=bounds.period_start_date,
        period_end_date=period_end,
        tokens_used_current_period=0,
        token_limit_override=token_limit_override,
        papers_accessed_current_period=0,
        selected_grade_id=selected_grade_id,
        selected_subject_ids=list(selected_subject_ids or []),
        cancel_at_period_end=False,
        created_at=now,
        updated_at=now,
    )


async def activate_tier(
    session: AsyncSession,
    user_id: str,
    tier: SubscriptionTier,
    now: datetime,
    *,
    carry_over: bool = False,
    **subscription_fields,
) -> UserSubscription:
    """Replace the user's active subscription with a fresh row on ``tier``.

    The previous row is retired (``inactive``) before the new one is
    inserted. When ``carry_over`` is set, unused tokens of the previous
    period are added on top of the new tier's limit.

    Raises:
        ConcurrentModificationError: Another writer activated a row first
    """
    await lock_user(session, user_id, now)
    current = await fetch_active_subscription(session, user_id)

    token_limit_override = None
    if current is not None:
        if carry_over:
            token_limit_override = purchase_carryover(
                effective_token_limit(current, current.tier),
                current.tokens_used_current_period,
                tier.token_limit,
            )
        current.status = SUBSCRIPTION_INACTIVE
        current.expired_at = now
        await session.flush()

    subscription = _new_subscription(
        user_id, tier, now, token_limit_override=token_limit_override, **subscription_fields
    )
    session.add(subscription)
    try:
        await session.flush()
    except IntegrityError as e:
        raise ConcurrentModificationError("Another subscription change is in progress, please retry") from e

    logger.info(
        "subscription_activated",
        user_id=user_id,
        tier=tier.name,
        billing_cycle=subscription.billing_cycle,
        replaced_subscription_id=str(current.id) if current is not None else None,
        token_limit_override=token_limit_override,
    )
    return subscription


async def apply_transition(session: AsyncSession, subscription: UserSubscription, now: datetime) -> PeriodTransition:
    """Persist the period transition due for ``subscription`` at ``now``.

    The UPDATE is conditioned on the period end the decision was based
    on, so concurrent sweeps apply each boundary once.

    A writer that loses the race re-reads the row and decides again, so
    ``subscription`` always reflects the stored state on return.

    Returns:
        The applied transition (action NONE when nothing changed)
    """
    while True:
        transition = rollover_period(subscription, now)
        if transition.action == TransitionAction.NONE:
            return transition
        if await _write_transition(session, subscription, transition, now):
            break

        await session.refresh(subscription)
        if subscription.status != SUBSCRIPTION_ACTIVE:
            return PeriodTransition(TransitionAction.NONE, None, None, "already applied")

    logger.info(
        "subscription_period_transition",
        user_id=subscription.user_id,
        subscription_id=str(subscription.id),
        action=str(transition.action),
        reason=transition.reason,
        period_end_date=transition.period_end_date.isoformat() if transition.period_end_date else None,
    )
    return transition


async def _write_transition(
    session: AsyncSession, subscription: UserSubscription, transition: PeriodTransition, now: datetime
) -> bool:
    """Conditional UPDATE for one transition. False when another writer got there first."""
    stmt = update(UserSubscription).where(
        UserSubscription.id == subscription.id,
        UserSubscription.status == SUBSCRIPTION_ACTIVE,
        UserSubscription.period_end_date == subscription.period_end_date,
    )
    if transition.action == TransitionAction.ROLLOVER:
        stmt = stmt.values(
            period_start_date=transition.period_start_date,
            period_end_date=transition.period_end_date,
            tokens_used_current_period=0,
            papers_accessed_current_period=0,
            token_limit_override=None,
            updated_at=now,
        )
    else:
        stmt = stmt.values(status=SUBSCRIPTION_INACTIVE, expired_at=now, updated_at=now)

    result = await session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount == 0:
        return False

    await session.refresh(subscription)
    return True


# ── Service ─────────────────────────────────────────────────────────


class SubscriptionService:
    """Lifecycle operations on a user's subscription.

    Every public method runs as one transaction. Domain failures are
    raised as EntitlementError subclasses; leaving the session context
    on an exception rolls the transaction back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        referrals: ReferralService | None = None,
    ):
        self.session_factory = session_factory
        self.referrals = referrals or ReferralService(session_factory)

    async def ensure_subscription(self, user_id: str, now: datetime | None = None) -> UserSubscription:
        """Return the active subscription, provisioning a free-tier row if none exists.

        A due period boundary is applied first, so an expired row is
        replaced by a fresh free tier. Concurrent first calls race on the
        partial unique index; the loser re-fetches exactly once.

        Raises:
            ConcurrentModificationError: The insert lost a race and no row was found on retry
        """
        now = as_naive_utc(now or utcnow())

        for attempt in range(2):
            async with self.session_factory() as session:
                subscription = await fetch_active_subscription(session, user_id)
                if subscription is not None:
                    await apply_transition(session, subscription, now)
                    await session.commit()
                    if subscription.status == SUBSCRIPTION_ACTIVE:
                        return subscription
                    # Retired at the boundary; another caller may have provisioned already
                    subscription = await fetch_active_subscription(session, user_id)
                    if subscription is not None:
                        return subscription

                free_tier = await fetch_free_tier(session)
                subscription = _new_subscription(user_id, free_tier, now)
                session.add(subscription)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info("ensure_subscription_race", user_id=user_id, attempt=attempt)
                    continue

                logger.info("subscription_created", user_id=user_id, tier=free_tier.name)
                return subscription

        raise ConcurrentModificationError("Could not provision a subscription, please retry")

    async def get_entitlements(self, user_id: str, now: datetime | None = None) -> EntitlementSnapshot:
        subscription = await self.ensure_subscription(user_id, now)
        return resolve_entitlements(subscription, subscription.tier)

    async def cancel_at_period_end(
        self, user_id: str, reason: str | None = None, now: datetime | None = None
    ) -> UserSubscription:
        """Schedule cancellation; access and quotas stay unchanged until the boundary.

        Monthly subscriptions stop recurring. Yearly subscriptions keep
        their monthly refills until ``subscription_end_date``.
        """
        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            await lock_user(session, user_id, now)
            subscription = await require_active_subscription(session, user_id)
            if subscription.cancel_at_period_end:
                raise EntitlementError("Subscription is already scheduled for cancellation")

            subscription.cancel_at_period_end = True
            subscription.cancellation_reason = reason
            subscription.cancellation_requested_at = now
            if subscription.billing_cycle != BillingCycle.YEARLY:
                subscription.is_recurring = False
            await session.commit()

            logger.info(
                "subscription_cancellation_scheduled",
                user_id=user_id,
                subscription_id=str(subscription.id),
                effective_at=cancellation_boundary(subscription).isoformat(),
            )
            return subscription

    async def reactivate(self, user_id: str, now: datetime | None = None) -> UserSubscription:
        """Undo a scheduled cancellation. Period bounds are left untouched."""
        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            await lock_user(session, user_id, now)
            subscription = await require_active_subscription(session, user_id)
            if not subscription.cancel_at_period_end:
                raise EntitlementError("Subscription is not scheduled for cancellation")

            boundary = cancellation_boundary(subscription)
            if boundary is not None and now >= boundary:
                raise EntitlementError("Cancellation has already taken effect")

            subscription.cancel_at_period_end = False
            subscription.cancellation_reason = None
            subscription.cancellation_requested_at = None
            # Fixed-term subscriptions (bank transfer, points) never renew
            if subscription.billing_cycle != BillingCycle.YEARLY:
                subscription.is_recurring = subscription.end_date is None
            await session.commit()

            logger.info("subscription_reactivated", user_id=user_id, subscription_id=str(subscription.id))
            return subscription

    async def update_selections(
        self, user_id: str, grade_id: str | None, subject_ids: list[str] | None, now: datetime | None = None
    ) -> UserSubscription:
        """Set the grade/subject scope of the active subscription. Set once, then locked."""
        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            await lock_user(session, user_id, now)
            subscription = await require_active_subscription(session, user_id)
            if selections_locked(subscription):
                raise InvalidSelectionError("Your grade and subjects are already set for this subscription")

            grade, subjects = validate_selection(subscription.tier, grade_id, subject_ids)
            subscription.selected_grade_id = grade
            subscription.selected_subject_ids = subjects
            await session.commit()

            logger.info("selections_updated", user_id=user_id, grade_id=grade, subject_count=len(subjects))
            return subscription

    async def apply_payment(self, outcome, now: datetime | None = None) -> UserSubscription:
        """Record a payment gateway outcome as a tier transition.

        Args:
            outcome: PaymentOutcome reported by the gateway

        Raises:
            ExternalServiceFailureError: The gateway reported anything but a completed charge
        """
        now = as_naive_utc(now or utcnow())
        if outcome.status != "completed":
            raise ExternalServiceFailureError(
                "payment_gateway",
                f"Payment {outcome.status}: {outcome.failure_reason or 'no details provided'}",
            )

        settings = get_settings()
        cycle = BillingCycle(outcome.billing_cycle)
        is_recurring = outcome.is_recurring
        if is_recurring is None:
            is_recurring = outcome.payment_provider in settings.recurring_payment_providers

        end_date = as_naive_utc(outcome.end_date) if outcome.end_date else None
        if not is_recurring and end_date is None and cycle != BillingCycle.LIFETIME:
            end_date = now + (relativedelta(years=1) if cycle == BillingCycle.YEARLY else relativedelta(months=1))

        renewal = as_naive_utc(outcome.renewal_date) if outcome.renewal_date else None
        period_fields = {}
        if renewal is not None:
            if cycle == BillingCycle.YEARLY:
                period_fields["subscription_end_date"] = renewal
            else:
                period_fields["period_end_date"] = renewal
        elif cycle == BillingCycle.YEARLY and end_date is not None:
            period_fields["subscription_end_date"] = end_date

        # Points accounts are created outside the main transaction
        referrer_id = await self.referrals.pending_referrer(outcome.user_id)
        if referrer_id is not None:
            await self.referrals.ensure_account(referrer_id)

        async with self.session_factory() as session:
            tier = await fetch_tier(session, outcome.tier_id)
            subscription = await activate_tier(
                session,
                outcome.user_id,
                tier,
                now,
                carry_over=True,
                billing_cycle=cycle,
                is_recurring=is_recurring,
                payment_provider=outcome.payment_provider,
                end_date=end_date,
                **period_fields,
            )
            await complete_referral(session, outcome.user_id, tier, now)
            await session.commit()

        logger.info(
            "payment_applied",
            user_id=outcome.user_id,
            tier=tier.name,
            provider=outcome.payment_provider,
            reference=outcome.reference,
        )
        return subscription

    async def grant_token_override(
        self, user_id: str, token_limit_override: int | None, now: datetime | None = None
    ) -> UserSubscription:
        """Set (or clear with None) the admin-granted token limit for the current period."""
        if token_limit_override is not None and token_limit_override < 0:
            raise EntitlementError("Token limit override must be non-negative")

        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            await lock_user(session, user_id, now)
            subscription = await require_active_subscription(session, user_id)
            subscription.token_limit_override = token_limit_override
            await session.commit()

            logger.info("token_override_granted", user_id=user_id, token_limit_override=token_limit_override)
            return subscription

    async def apply_period_rollover(self, user_id: str, now: datetime | None = None) -> PeriodTransition:
        """Apply the due period transition for one user's active subscription."""
        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            subscription = await require_active_subscription(session, user_id)
            transition = await apply_transition(session, subscription, now)
            await session.commit()
            return transition

    async def process_period_boundaries(self, now: datetime | None = None) -> dict[str, int]:
        """Sweep every active subscription whose period, term or commitment has ended.

        Each user is processed in its own transaction.
        """
        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserSubscription.user_id).where(
                    UserSubscription.status == SUBSCRIPTION_ACTIVE,
                    or_(
                        UserSubscription.period_end_date <= now,
                        UserSubscription.end_date <= now,
                        UserSubscription.subscription_end_date <= now,
                    ),
                )
            )
            user_ids = list(result.scalars().all())

        counts = {"rolled_over": 0, "expired": 0}
        for user_id in user_ids:
            try:
                transition = await self.apply_period_rollover(user_id, now)
            except NoActiveSubscriptionError:
                continue
            if transition.action == TransitionAction.ROLLOVER:
                counts["rolled_over"] += 1
            elif transition.action == TransitionAction.EXPIRE:
                counts["expired"] += 1

        logger.info("period_boundaries_processed", candidates=len(user_ids), **counts)
        return counts
