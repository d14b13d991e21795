"""Billing period arithmetic and the period rollover transition.

Pure domain functions for advancing a subscription's usage period.
No DB access, fully deterministic. All timestamps are naive UTC.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from dateutil.relativedelta import relativedelta


class BillingCycle(StrEnum):
    """How a subscription is billed."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class TransitionAction(StrEnum):
    """Outcome of evaluating a subscription at a point in time."""

    NONE = "none"
    ROLLOVER = "rollover"
    EXPIRE = "expire"


# Usage counters refill monthly for every cycle; yearly plans get twelve refills.
REFILL_STEP = relativedelta(months=1)

COMMITMENT_LENGTH: dict[BillingCycle, relativedelta | None] = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.YEARLY: relativedelta(years=1),
    BillingCycle.LIFETIME: None,
}


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in every column."""
    return datetime.now(UTC).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class PeriodBounds:
    """Initial bounds for a freshly activated subscription."""

    period_start_date: datetime
    period_end_date: datetime
    subscription_end_date: datetime | None


@dataclass(frozen=True)
class PeriodTransition:
    """Result of evaluating the period boundary for one subscription."""

    action: TransitionAction
    period_start_date: datetime | None
    period_end_date: datetime | None
    reason: str


def initial_period(cycle: BillingCycle | str, start: datetime) -> PeriodBounds:
    """Compute the first usage period for a subscription starting at ``start``.

    Yearly subscriptions get a monthly usage period and a separate
    ``subscription_end_date`` one year out.
    """
    cycle = BillingCycle(cycle)
    subscription_end = start + COMMITMENT_LENGTH[BillingCycle.YEARLY] if cycle == BillingCycle.YEARLY else None
    return PeriodBounds(
        period_start_date=start,
        period_end_date=start + REFILL_STEP,
        subscription_end_date=subscription_end,
    )


def cancellation_boundary(subscription) -> datetime | None:
    """When a subscription flagged ``cancel_at_period_end`` actually ends.

    Yearly subscriptions run to the end of the paid year, everything
    else to the end of the current period.
    """
    if subscription.billing_cycle == BillingCycle.YEARLY and subscription.subscription_end_date is not None:
        return subscription.subscription_end_date
    return subscription.period_end_date


def _next_bounds(period_end: datetime, now: datetime) -> tuple[datetime, datetime]:
    """Advance whole refill steps from ``period_end`` until the period covers ``now``.

    Steps are anchored on ``period_end`` so month-end clamping does not drift.
    """
    steps = 1
    while period_end + REFILL_STEP * steps <= now:
        steps += 1
    return period_end + REFILL_STEP * (steps - 1), period_end + REFILL_STEP * steps


def rollover_period(subscription, now: datetime) -> PeriodTransition:
    """Decide what happens to ``subscription`` at time ``now``.

    Pure function: reads ``billing_cycle``, ``is_recurring``,
    ``cancel_at_period_end``, ``period_end_date``, ``end_date`` and
    ``subscription_end_date`` and returns the transition to apply.

    Rules:
        - cancelled and past the cancellation boundary: EXPIRE
        - yearly and past ``subscription_end_date``: EXPIRE
        - non-recurring (non-lifetime) and past ``end_date`` (or period end): EXPIRE
        - past ``period_end_date``: ROLLOVER to the period containing ``now``;
          yearly periods never extend beyond ``subscription_end_date``
        - otherwise: NONE
    """
    now = as_naive_utc(now)
    period_end = subscription.period_end_date
    if period_end is None:
        return PeriodTransition(TransitionAction.NONE, None, None, "no period end")

    cycle = BillingCycle(subscription.billing_cycle or BillingCycle.MONTHLY)

    if subscription.cancel_at_period_end:
        boundary = cancellation_boundary(subscription)
        if boundary is not None and now >= boundary:
            return PeriodTransition(TransitionAction.EXPIRE, None, None, "cancelled at period end")

    if cycle == BillingCycle.YEARLY and subscription.subscription_end_date is not None:
        if now >= subscription.subscription_end_date:
            return PeriodTransition(TransitionAction.EXPIRE, None, None, "yearly commitment ended")

    if not subscription.is_recurring and cycle != BillingCycle.LIFETIME:
        boundary = subscription.end_date or period_end
        if now >= boundary:
            return PeriodTransition(TransitionAction.EXPIRE, None, None, "non-recurring subscription ended")

    if now < period_end:
        return PeriodTransition(TransitionAction.NONE, subscription.period_start_date, period_end, "period current")

    start, end = _next_bounds(period_end, now)
    if cycle == BillingCycle.YEARLY and subscription.subscription_end_date is not None:
        end = min(end, subscription.subscription_end_date)

    return PeriodTransition(TransitionAction.ROLLOVER, start, end, "period rolled over")
