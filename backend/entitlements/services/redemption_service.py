"""RedemptionService — spend referral points on a tier.

Tiers that need a grade/subject choice are redeemed in two steps: the
points are debited into a pending reservation, and the tier is activated
by ``finalize_redemption``. A reservation that is cancelled, superseded
or left to expire is refunded, so points are never spent without either
an active subscription or a reservation that will be refunded.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.core.config import get_settings
from entitlements.core.exceptions import ConcurrentModificationError, EntitlementError, ReservationError
from entitlements.db.models.redemption_reservation import (
    RESERVATION_CANCELLED,
    RESERVATION_EXPIRED,
    RESERVATION_FINALIZED,
    RESERVATION_PENDING,
    RESERVATION_SUPERSEDED,
    RedemptionReservation,
)
from entitlements.db.models.user_subscription import UserSubscription
from entitlements.domain.periods import BillingCycle, as_naive_utc, utcnow
from entitlements.domain.selections import validate_selection
from entitlements.services.referral_service import debit_points, fetch_balance, refund_points
from entitlements.services.subscription_service import activate_tier, lock_user
from entitlements.services.tier_catalog import fetch_tier

logger = structlog.get_logger(__name__)


@dataclass
class RedemptionOutcome:
    """Either an activated subscription or a pending reservation, plus the balance left."""

    subscription: UserSubscription | None
    reservation: RedemptionReservation | None
    points_spent: int
    points_balance: int


async def fetch_pending_reservation(session: AsyncSession, user_id: str) -> RedemptionReservation | None:
    result = await session.execute(
        select(RedemptionReservation)
        .where(RedemptionReservation.user_id == user_id, RedemptionReservation.status == RESERVATION_PENDING)
        .execution_options(populate_existing=True)
    )
    return result.unique().scalar_one_or_none()


async def release_reservation(
    session: AsyncSession, reservation: RedemptionReservation, status: str, now: datetime
) -> bool:
    """Close a pending reservation and refund its points.

    Returns:
        False if the reservation was no longer pending (someone else resolved it)
    """
    result = await session.execute(
        update(RedemptionReservation)
        .where(RedemptionReservation.id == reservation.id, RedemptionReservation.status == RESERVATION_PENDING)
        .values(status=status, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False

    await refund_points(
        session,
        reservation.user_id,
        reservation.points_debited,
        f"Refund: {reservation.tier.display_name} redemption {status}",
        now,
        reservation_id=reservation.id,
    )
    await session.refresh(reservation)
    logger.info(
        "reservation_released",
        user_id=reservation.user_id,
        reservation_id=str(reservation.id),
        status=status,
        points_refunded=reservation.points_debited,
    )
    return True


class RedemptionService:
    """Points-for-tier redemption with reservation-with-expiry for selection tiers."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def redeem(self, user_id: str, tier_id: int, now: datetime | None = None) -> RedemptionOutcome:
        """Debit ``tier.points_cost`` and activate the tier (or reserve it).

        An earlier pending reservation is refunded and superseded first.

        Raises:
            InsufficientPointsError: Balance below the cost; nothing changes
        """
        now = as_naive_utc(now or utcnow())
        settings = get_settings()

        async with self.session_factory() as session:
            tier = await fetch_tier(session, tier_id)
            if not tier.is_redeemable or tier.coming_soon:
                raise EntitlementError(f"{tier.display_name} cannot be redeemed with points")

            await lock_user(session, user_id, now)

            previous = await fetch_pending_reservation(session, user_id)
            if previous is not None:
                await release_reservation(session, previous, RESERVATION_SUPERSEDED, now)

            if not tier.requires_selection:
                subscription = await activate_tier(
                    session,
                    user_id,
                    tier,
                    now,
                    billing_cycle=BillingCycle.MONTHLY,
                    is_recurring=False,
                    payment_provider=settings.points_payment_provider,
                    end_date=now + relativedelta(months=settings.redemption_period_months),
                )
                spent = await debit_points(
                    session,
                    user_id,
                    tier.points_cost,
                    f"Redeemed {tier.display_name}",
                    now,
                    subscription_id=subscription.id,
                )
                await session.commit()

                logger.info("points_redeemed", user_id=user_id, tier=tier.name, points=tier.points_cost)
                return RedemptionOutcome(subscription, None, tier.points_cost, spent.balance_after)

            reservation = RedemptionReservation(
                id=uuid.uuid4(),
                user_id=user_id,
                tier_id=tier.id,
                tier=tier,
                points_debited=tier.points_cost,
                status=RESERVATION_PENDING,
                expires_at=now + timedelta(minutes=settings.reservation_ttl_minutes),
                created_at=now,
            )
            session.add(reservation)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConcurrentModificationError("Another redemption is in progress, please retry") from e

            spent = await debit_points(
                session,
                user_id,
                tier.points_cost,
                f"Reserved {tier.display_name} pending grade and subject selection",
                now,
                reservation_id=reservation.id,
            )
            await session.commit()

            logger.info(
                "redemption_reserved",
                user_id=user_id,
                tier=tier.name,
                reservation_id=str(reservation.id),
                expires_at=reservation.expires_at.isoformat(),
            )
            return RedemptionOutcome(None, reservation, tier.points_cost, spent.balance_after)

    async def finalize_redemption(
        self,
        user_id: str,
        grade_id: str | None,
        subject_ids: list[str] | None,
        reservation_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> tuple[UserSubscription, RedemptionReservation]:
        """Validate selections and activate the reserved tier in one transaction.

        An expired reservation is refunded (and the refund committed)
        before the failure is raised. Invalid selections leave the
        reservation pending so the user can try again until it expires.

        Raises:
            ReservationError: No pending reservation, superseded, or expired
            InvalidSelectionError: The selection violates the reserved tier's bounds
        """
        now = as_naive_utc(now or utcnow())

        async with self.session_factory() as session:
            await lock_user(session, user_id, now)
            reservation = await fetch_pending_reservation(session, user_id)

            if reservation_id is not None and (reservation is None or reservation.id != reservation_id):
                other = await session.get(RedemptionReservation, reservation_id)
                if other is None or other.user_id != user_id:
                    raise ReservationError("Redemption not found")
                if other.status == RESERVATION_SUPERSEDED:
                    raise ReservationError("This redemption was replaced by a newer one")
                raise ReservationError(f"This redemption is already {other.status}")
            if reservation is None:
                raise ReservationError("No pending redemption to finalize")

            if now >= reservation.expires_at:
                await release_reservation(session, reservation, RESERVATION_EXPIRED, now)
                await session.commit()
                raise ReservationError("Your redemption expired and the points were refunded")

            tier = reservation.tier
            grade, subjects = validate_selection(tier, grade_id, subject_ids)

            subscription = await activate_tier(
                session,
                user_id,
                tier,
                now,
                billing_cycle=BillingCycle.MONTHLY,
                is_recurring=False,
                payment_provider=get_settings().points_payment_provider,
                end_date=now + relativedelta(months=get_settings().redemption_period_months),
                selected_grade_id=grade,
                selected_subject_ids=subjects,
            )

            claimed = await session.execute(
                update(RedemptionReservation)
                .where(
                    RedemptionReservation.id == reservation.id,
                    RedemptionReservation.status == RESERVATION_PENDING,
                )
                .values(status=RESERVATION_FINALIZED, resolved_at=now, subscription_id=subscription.id)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                raise ConcurrentModificationError("Redemption was resolved by another request")

            await session.refresh(reservation)
            await session.commit()

            logger.info(
                "redemption_finalized",
                user_id=user_id,
                tier=tier.name,
                reservation_id=str(reservation.id),
                subscription_id=str(subscription.id),
            )
            return subscription, reservation

    async def cancel_reservation(self, user_id: str, now: datetime | None = None) -> tuple[RedemptionReservation, int]:
        """Abandon the pending redemption and refund its points.

        Returns:
            Tuple of (cancelled reservation, balance after refund)
        """
        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            reservation = await fetch_pending_reservation(session, user_id)
            if reservation is None:
                raise ReservationError("No pending redemption to cancel")
            if not await release_reservation(session, reservation, RESERVATION_CANCELLED, now):
                raise ConcurrentModificationError("Redemption was resolved by another request")

            balance = await fetch_balance(session, user_id)
            await session.commit()
            return reservation, balance.points_balance

    async def expire_stale_reservations(self, now: datetime | None = None) -> int:
        """Refund and expire every pending reservation past ``expires_at``."""
        now = as_naive_utc(now or utcnow())
        async with self.session_factory() as session:
            result = await session.execute(
                select(RedemptionReservation).where(
                    RedemptionReservation.status == RESERVATION_PENDING,
                    RedemptionReservation.expires_at <= now,
                )
            )
            stale = list(result.unique().scalars().all())

            expired = 0
            for reservation in stale:
                if await release_reservation(session, reservation, RESERVATION_EXPIRED, now):
                    expired += 1
            await session.commit()

        if expired:
            logger.info("reservations_expired", count=expired)
        return expired
