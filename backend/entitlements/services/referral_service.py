"""ReferralService — referral codes, points balances and the points ledger.

Balance changes are conditional UPDATEs on the user's balance row, each
paired with exactly one immutable ReferralTransaction in the same
transaction, so the ledger always sums to ``points_balance``.
"""

import secrets
import string
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.core.exceptions import (
    ConcurrentModificationError,
    EntitlementError,
    InsufficientPointsError,
)
from entitlements.db.models.referral import REFERRAL_COMPLETED, REFERRAL_PENDING, Referral, ReferralCode
from entitlements.db.models.referral_points import (
    TRANSACTION_EARNED,
    TRANSACTION_REFUNDED,
    TRANSACTION_SPENT,
    ReferralPointsBalance,
    ReferralTransaction,
)
from entitlements.db.models.subscription_tier import SubscriptionTier
from entitlements.domain.periods import utcnow

logger = structlog.get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


def generate_referral_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


# ── Ledger primitives (run inside the caller's transaction) ─────────


async def fetch_balance(session: AsyncSession, user_id: str) -> ReferralPointsBalance | None:
    result = await session.execute(
        select(ReferralPointsBalance)
        .where(ReferralPointsBalance.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _record(
    session: AsyncSession,
    user_id: str,
    transaction_type: str,
    points: int,
    description: str,
    now: datetime,
    **links,
) -> ReferralTransaction:
    balance = await fetch_balance(session, user_id)
    transaction = ReferralTransaction(
        user_id=user_id,
        transaction_type=transaction_type,
        points=points,
        balance_after=balance.points_balance,
        description=description,
        created_at=now,
        **links,
    )
    session.add(transaction)
    await session.flush()
    return transaction


async def credit_points(
    session: AsyncSession, user_id: str, points: int, description: str, now: datetime, **links
) -> ReferralTransaction:
    """Add earned points. The balance row must already exist (see ``ensure_account``)."""
    result = await session.execute(
        update(ReferralPointsBalance)
        .where(ReferralPointsBalance.user_id == user_id)
        .values(
            points_balance=ReferralPointsBalance.points_balance + points,
            total_earned=ReferralPointsBalance.total_earned + points,
            successful_referrals=ReferralPointsBalance.successful_referrals + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConcurrentModificationError(f"Points account missing for user {user_id}")
    return await _record(session, user_id, TRANSACTION_EARNED, points, description, now, **links)


async def debit_points(
    session: AsyncSession, user_id: str, points: int, description: str, now: datetime, **links
) -> ReferralTransaction:
    """Spend points with a compare-and-swap on the balance.

    Raises:
        InsufficientPointsError: The balance is below ``points``; nothing is changed
    """
    result = await session.execute(
        update(ReferralPointsBalance)
        .where(ReferralPointsBalance.user_id == user_id, ReferralPointsBalance.points_balance >= points)
        .values(
            points_balance=ReferralPointsBalance.points_balance - points,
            total_spent=ReferralPointsBalance.total_spent + points,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        balance = await fetch_balance(session, user_id)
        raise InsufficientPointsError(balance.points_balance if balance else 0, points)
    return await _record(session, user_id, TRANSACTION_SPENT, -points, description, now, **links)


async def refund_points(
    session: AsyncSession, user_id: str, points: int, description: str, now: datetime, **links
) -> ReferralTransaction:
    """Return previously spent points; refunds reduce ``total_spent``."""
    result = await session.execute(
        update(ReferralPointsBalance)
        .where(ReferralPointsBalance.user_id == user_id)
        .values(
            points_balance=ReferralPointsBalance.points_balance + points,
            total_spent=ReferralPointsBalance.total_spent - points,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConcurrentModificationError(f"Points account missing for user {user_id}")
    return await _record(session, user_id, TRANSACTION_REFUNDED, points, description, now, **links)


async def complete_referral(
    session: AsyncSession, referred_user_id: str, tier: SubscriptionTier, now: datetime
) -> Referral | None:
    """Credit the referrer on the referred user's first paid conversion.

    The referral is claimed with a conditional UPDATE (pending -> completed)
    so a conversion is credited at most once. The referrer's balance row
    must exist beforehand.

    Returns:
        The completed referral, or None if nothing was credited
    """
    points = tier.referral_points_awarded or 0
    if points <= 0:
        return None

    result = await session.execute(
        select(Referral).where(Referral.referred_id == referred_user_id, Referral.status == REFERRAL_PENDING)
    )
    referral = result.scalar_one_or_none()
    if referral is None:
        return None

    claimed = await session.execute(
        update(Referral)
        .where(Referral.id == referral.id, Referral.status == REFERRAL_PENDING)
        .values(status=REFERRAL_COMPLETED, points_awarded=points, subscription_tier_id=tier.id, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        return None

    await credit_points(
        session,
        referral.referrer_id,
        points,
        f"Referral reward: friend subscribed to {tier.display_name}",
        now,
        referral_id=referral.id,
    )
    await session.refresh(referral)
    logger.info(
        "referral_completed",
        referrer_id=referral.referrer_id,
        referred_id=referred_user_id,
        tier=tier.name,
        points=points,
    )
    return referral


# ── Service ─────────────────────────────────────────────────────────


class ReferralService:
    """Referral codes and points balances."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def ensure_account(self, user_id: str) -> ReferralPointsBalance:
        """Get or create the user's balance row (race-safe, own transaction)."""
        async with self.session_factory() as session:
            balance = await fetch_balance(session, user_id)
            if balance is not None:
                return balance

            balance = ReferralPointsBalance(user_id=user_id)
            session.add(balance)
            try:
                await session.commit()
                return balance
            except IntegrityError:
                # Concurrent request created it first
                await session.rollback()
                balance = await fetch_balance(session, user_id)
                if balance is None:
                    raise ConcurrentModificationError("Could not create points account, please retry")
                return balance

    async def get_balance(self, user_id: str) -> ReferralPointsBalance:
        return await self.ensure_account(user_id)

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[ReferralTransaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReferralTransaction)
                .where(ReferralTransaction.user_id == user_id)
                .order_by(ReferralTransaction.created_at.desc(), ReferralTransaction.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_or_create_referral_code(self, user_id: str) -> ReferralCode:
        """Return the user's referral code, generating one on first use."""
        for _ in range(5):
            async with self.session_factory() as session:
                result = await session.execute(select(ReferralCode).where(ReferralCode.user_id == user_id))
                existing = result.scalar_one_or_none()
                if existing is not None:
                    return existing

                referral_code = ReferralCode(user_id=user_id, code=generate_referral_code(), created_at=utcnow())
                session.add(referral_code)
                try:
                    await session.commit()
                except IntegrityError:
                    # Either a concurrent request created the user's code or the code collided
                    await session.rollback()
                    continue

                logger.info("referral_code_created", user_id=user_id)
                return referral_code

        raise ConcurrentModificationError("Could not allocate a referral code, please retry")

    async def apply_referral_code(self, user_id: str, code: str, now: datetime | None = None) -> Referral:
        """Record that ``user_id`` signed up with someone else's referral code."""
        now = now or utcnow()
        normalized = (code or "").strip().upper()

        async with self.session_factory() as session:
            result = await session.execute(select(ReferralCode).where(ReferralCode.code == normalized))
            referral_code = result.scalar_one_or_none()
        if referral_code is None:
            raise EntitlementError("Invalid referral code")
        if referral_code.user_id == user_id:
            raise EntitlementError("You cannot use your own referral code")

        await self.ensure_account(referral_code.user_id)

        async with self.session_factory() as session:
            result = await session.execute(select(Referral).where(Referral.referred_id == user_id))
            if result.scalar_one_or_none() is not None:
                raise EntitlementError("A referral code has already been applied to your account")

            referral = Referral(
                referrer_id=referral_code.user_id,
                referred_id=user_id,
                referral_code=normalized,
                status=REFERRAL_PENDING,
                created_at=now,
            )
            session.add(referral)
            try:
                await session.flush()
            except IntegrityError as e:
                raise EntitlementError("A referral code has already been applied to your account") from e

            await session.execute(
                update(ReferralPointsBalance)
                .where(ReferralPointsBalance.user_id == referral_code.user_id)
                .values(total_referrals=ReferralPointsBalance.total_referrals + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info("referral_code_applied", user_id=user_id, referrer_id=referral_code.user_id)
        return referral

    async def pending_referrer(self, user_id: str) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Referral.referrer_id).where(
                    Referral.referred_id == user_id, Referral.status == REFERRAL_PENDING
                )
            )
            return result.scalar_one_or_none()

    async def credit_referral(
        self, referrer_id: str, tier: SubscriptionTier, now: datetime | None = None
    ) -> ReferralTransaction:
        """Credit ``tier.referral_points_awarded`` to the referrer and count the referral."""
        now = now or utcnow()
        await self.ensure_account(referrer_id)
        async with self.session_factory() as session:
            transaction = await credit_points(
                session,
                referrer_id,
                tier.referral_points_awarded or 0,
                f"Referral reward: friend subscribed to {tier.display_name}",
                now,
            )
            await session.commit()

        logger.info("referral_credited", referrer_id=referrer_id, tier=tier.name, points=transaction.points)
        return transaction

    async def award_for_conversion(
        self, referred_user_id: str, tier: SubscriptionTier, now: datetime | None = None
    ) -> Referral | None:
        """Complete the pending referral of ``referred_user_id`` in its own transaction."""
        now = now or utcnow()
        referrer_id = await self.pending_referrer(referred_user_id)
        if referrer_id is None:
            return None

        await self.ensure_account(referrer_id)
        async with self.session_factory() as session:
            referral = await complete_referral(session, referred_user_id, tier, now)
            await session.commit()
            return referral
