"""UsageService — metered consumption gated by the active subscription's limits.

Counters are only ever moved by conditional UPDATEs: the limit check and
the increment are one statement, so overlapping callers cannot jointly
push a counter past its limit.
"""

import uuid
from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.core.exceptions import (
    ConcurrentModificationError,
    EntitlementError,
    NoActiveSubscriptionError,
    QuotaExceededError,
)
from entitlements.db.models.paper_access import PaperAccess
from entitlements.db.models.study_plan import StudyPlanSchedule
from entitlements.db.models.user_subscription import SUBSCRIPTION_ACTIVE, UserSubscription
from entitlements.domain.entitlements import StudyPlanQuota, effective_token_limit, study_plan_quota
from entitlements.domain.periods import TransitionAction, as_naive_utc, rollover_period, utcnow
from entitlements.services.subscription_service import (
    SubscriptionService,
    fetch_active_subscription,
    lock_user,
    require_active_subscription,
)

logger = structlog.get_logger(__name__)


async def count_study_plans(session: AsyncSession, user_id: str) -> int:
    """Lifetime count, deactivated plans included."""
    result = await session.execute(
        select(func.count()).select_from(StudyPlanSchedule).where(StudyPlanSchedule.user_id == user_id)
    )
    return result.scalar_one()


class UsageService:
    """Token, paper and study plan metering."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        subscriptions: SubscriptionService | None = None,
    ):
        self.session_factory = session_factory
        self.subscriptions = subscriptions or SubscriptionService(session_factory)

    async def _apply_due_boundary(self, user_id: str, now: datetime) -> None:
        """Roll over or expire a subscription whose period ended before the sweep ran.

        Users without an active subscription are left alone; metering
        then reports NoActiveSubscriptionError as usual.
        """
        async with self.session_factory() as session:
            subscription = await fetch_active_subscription(session, user_id)
            if subscription is None or rollover_period(subscription, now).action == TransitionAction.NONE:
                return

        await self.subscriptions.ensure_subscription(user_id, now)

    async def charge_tokens(
        self, user_id: str, amount: int, bypass: bool = False, now: datetime | None = None
    ) -> UserSubscription:
        """Add ``amount`` tokens to the current period's usage.

        Args:
            user_id: Owner of the active subscription
            amount: Non-negative token cost reported by the AI service
            bypass: Privileged accounts are counted but never blocked
            now: Charge time; a period that ended by then is rolled over first

        Raises:
            QuotaExceededError: The charge would exceed the effective limit; usage unchanged
        """
        if amount < 0:
            raise EntitlementError("Token amount must be non-negative")

        now = as_naive_utc(now or utcnow())
        await self._apply_due_boundary(user_id, now)
        async with self.session_factory() as session:
            subscription = await require_active_subscription(session, user_id)
            limit = effective_token_limit(subscription, subscription.tier)

            override = subscription.token_limit_override
            stmt = (
                update(UserSubscription)
                .where(
                    UserSubscription.id == subscription.id,
                    UserSubscription.status == SUBSCRIPTION_ACTIVE,
                    UserSubscription.tier_id == subscription.tier_id,
                    UserSubscription.period_start_date == subscription.period_start_date,
                    UserSubscription.token_limit_override.is_(None)
                    if override is None
                    else UserSubscription.token_limit_override == override,
                )
                .values(
                    tokens_used_current_period=UserSubscription.tokens_used_current_period + amount,
                    updated_at=now,
                )
            )
            if limit is not None and not bypass:
                stmt = stmt.where(UserSubscription.tokens_used_current_period + amount <= limit)

            result = await session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 0:
                await session.rollback()
                current = await fetch_active_subscription(session, user_id)
                if (
                    current is None
                    or current.id != subscription.id
                    or current.token_limit_override != override
                    or current.period_start_date != subscription.period_start_date
                ):
                    raise ConcurrentModificationError("Subscription changed while charging tokens, please retry")
                logger.warning(
                    "quota_exceeded",
                    user_id=user_id,
                    resource="tokens",
                    limit=limit,
                    used=current.tokens_used_current_period,
                    requested=amount,
                )
                raise QuotaExceededError(
                    "tokens",
                    limit,
                    current.tokens_used_current_period,
                    "You have reached your token limit for this period",
                )

            await session.refresh(subscription)
            await session.commit()

            logger.info(
                "tokens_charged",
                user_id=user_id,
                amount=amount,
                tokens_used=subscription.tokens_used_current_period,
                limit=limit,
                bypass=bypass,
            )
            return subscription

    async def record_paper_access(
        self, user_id: str, paper_id: str, now: datetime | None = None
    ) -> tuple[UserSubscription, bool]:
        """Count a paper the first time it is opened in the current period.

        Returns:
            Tuple of (subscription, newly_counted); repeat accesses are free

        Raises:
            QuotaExceededError: A new paper would exceed ``papers_limit``
        """
        paper_id = (paper_id or "").strip()
        if not paper_id:
            raise EntitlementError("A paper id is required")

        now = as_naive_utc(now or utcnow())
        await self._apply_due_boundary(user_id, now)
        async with self.session_factory() as session:
            subscription = await require_active_subscription(session, user_id)
            period_start = subscription.period_start_date

            session.add(
                PaperAccess(
                    subscription_id=subscription.id,
                    period_start_date=period_start,
                    paper_id=paper_id,
                    accessed_at=now,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                # Already opened this period
                await session.rollback()
                subscription = await require_active_subscription(session, user_id)
                return subscription, False

            limit = subscription.tier.papers_limit
            stmt = (
                update(UserSubscription)
                .where(
                    UserSubscription.id == subscription.id,
                    UserSubscription.status == SUBSCRIPTION_ACTIVE,
                    UserSubscription.period_start_date == period_start,
                )
                .values(
                    papers_accessed_current_period=UserSubscription.papers_accessed_current_period + 1,
                    updated_at=now,
                )
            )
            if limit is not None:
                stmt = stmt.where(UserSubscription.papers_accessed_current_period + 1 <= limit)

            result = await session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 0:
                await session.rollback()
                current = await require_active_subscription(session, user_id)
                if current.id != subscription.id or current.period_start_date != period_start:
                    raise ConcurrentModificationError("Subscription changed while recording access, please retry")
                logger.warning(
                    "quota_exceeded",
                    user_id=user_id,
                    resource="papers",
                    limit=limit,
                    used=current.papers_accessed_current_period,
                )
                raise QuotaExceededError(
                    "papers",
                    limit,
                    current.papers_accessed_current_period,
                    f"You have reached your limit of {limit} papers for this period",
                )

            await session.refresh(subscription)
            await session.commit()

            logger.info(
                "paper_access_recorded",
                user_id=user_id,
                paper_id=paper_id,
                papers_used=subscription.papers_accessed_current_period,
            )
            return subscription, True

    async def check_study_plan_quota(self, user_id: str) -> StudyPlanQuota:
        """Informational quota check; ``create_study_plan`` re-checks under the lock."""
        async with self.session_factory() as session:
            subscription = await require_active_subscription(session, user_id)
            used = await count_study_plans(session, user_id)
            return study_plan_quota(subscription.tier, used)

    async def create_study_plan(
        self,
        user_id: str,
        subject_id: str,
        grade_id: str | None = None,
        name: str = "",
    ) -> tuple[StudyPlanSchedule, StudyPlanQuota]:
        """Insert a study plan after re-verifying the quota in the same transaction.

        Raises:
            QuotaExceededError: The lifetime plan limit is reached
        """
        subject_id = (subject_id or "").strip()
        if not subject_id:
            raise EntitlementError("A subject is required to create a study plan")

        now = utcnow()
        await self._apply_due_boundary(user_id, now)
        async with self.session_factory() as session:
            if not await lock_user(session, user_id, now):
                raise NoActiveSubscriptionError()
            subscription = await require_active_subscription(session, user_id)

            used = await count_study_plans(session, user_id)
            quota = study_plan_quota(subscription.tier, used)
            if not quota.can_create:
                logger.warning("quota_exceeded", user_id=user_id, resource="study_plans", limit=quota.limit, used=used)
                if quota.limit == 0:
                    raise QuotaExceededError(
                        "study_plans", 0, used, "Study plans are not available on your current plan"
                    )
                raise QuotaExceededError(
                    "study_plans",
                    quota.limit,
                    used,
                    f"You have used all {quota.limit} study plans included in your plan",
                )

            plan = StudyPlanSchedule(
                user_id=user_id,
                subject_id=subject_id,
                grade_id=grade_id,
                name=name or "",
                is_active=True,
                created_at=now,
            )
            session.add(plan)
            await session.commit()

            logger.info("study_plan_created", user_id=user_id, plan_id=str(plan.id), used=used + 1)
            return plan, study_plan_quota(subscription.tier, used + 1)

    async def deactivate_study_plan(self, user_id: str, plan_id: str) -> StudyPlanSchedule:
        """Soft-delete a plan. Its quota stays consumed."""
        try:
            plan_uuid = uuid.UUID(str(plan_id))
        except ValueError as e:
            raise EntitlementError("Study plan not found") from e

        async with self.session_factory() as session:
            result = await session.execute(
                select(StudyPlanSchedule).where(
                    StudyPlanSchedule.id == plan_uuid, StudyPlanSchedule.user_id == user_id
                )
            )
            plan = result.scalar_one_or_none()
            if plan is None:
                raise EntitlementError("Study plan not found")

            if plan.is_active:
                plan.is_active = False
                plan.deactivated_at = utcnow()
                await session.commit()
                logger.info("study_plan_deactivated", user_id=user_id, plan_id=str(plan.id))
            return plan
