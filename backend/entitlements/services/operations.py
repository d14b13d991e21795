"""EntitlementOperations — client-facing operations that return results as data.

Each operation delegates to a service. EntitlementError failures (the
service transaction has already been rolled back) are logged and turned
into an unsuccessful result with the error's code. Anything else
propagates to the global exception handler.
"""

import uuid
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlements.core.exceptions import EntitlementError
from entitlements.core.logging import bind_operation_context
from entitlements.db.base import get_session_factory
from entitlements.domain.entitlements import resolve_entitlements
from entitlements.schemas.referrals import (
    PointsBalanceResponse,
    RedemptionResult,
    ReferralCodeResult,
    ReservationResponse,
    TransactionResponse,
)
from entitlements.schemas.results import OperationResult
from entitlements.schemas.subscription import (
    EntitlementsResponse,
    PaymentOutcome,
    RolloverResult,
    SubscriptionResult,
)
from entitlements.schemas.usage import (
    PaperAccessResult,
    StudyPlanQuotaResponse,
    StudyPlanQuotaResult,
    StudyPlanResult,
    TokenChargeResult,
)
from entitlements.services.redemption_service import RedemptionService
from entitlements.services.referral_service import ReferralService
from entitlements.services.subscription_service import SubscriptionService
from entitlements.services.usage_service import UsageService

logger = structlog.get_logger(__name__)


def _entitlements(subscription) -> EntitlementsResponse:
    return EntitlementsResponse.model_validate(resolve_entitlements(subscription, subscription.tier))


def _reservation(reservation) -> ReservationResponse:
    return ReservationResponse(
        id=str(reservation.id),
        tier_id=reservation.tier_id,
        tier_name=reservation.tier.name,
        points_debited=reservation.points_debited,
        status=reservation.status,
        expires_at=reservation.expires_at,
    )


def _rejected(result_cls, exc: EntitlementError, **fields):
    # operation and user_id come from bind_operation_context
    logger.warning("operation_rejected", error_code=exc.code, reason=exc.message)
    return result_cls(success=False, message=exc.message, error_code=exc.code, **fields)


class EntitlementOperations:
    """Facade over the entitlement services for the HTTP layer."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.referrals = ReferralService(session_factory)
        self.subscriptions = SubscriptionService(session_factory, self.referrals)
        self.usage = UsageService(session_factory, self.subscriptions)
        self.redemptions = RedemptionService(session_factory)

    # ── Subscription lifecycle ──────────────────────────────────────

    @bind_operation_context
    async def ensure_subscription(self, user_id: str) -> SubscriptionResult:
        try:
            subscription = await self.subscriptions.ensure_subscription(user_id)
        except EntitlementError as e:
            return _rejected(SubscriptionResult, e)
        return SubscriptionResult(success=True, message="Subscription ready", subscription=_entitlements(subscription))

    @bind_operation_context
    async def get_entitlements(self, user_id: str) -> SubscriptionResult:
        try:
            snapshot = await self.subscriptions.get_entitlements(user_id)
        except EntitlementError as e:
            return _rejected(SubscriptionResult, e)
        return SubscriptionResult(
            success=True, message="OK", subscription=EntitlementsResponse.model_validate(snapshot)
        )

    @bind_operation_context
    async def cancel_at_period_end(self, user_id: str, reason: str | None = None) -> SubscriptionResult:
        try:
            subscription = await self.subscriptions.cancel_at_period_end(user_id, reason)
        except EntitlementError as e:
            return _rejected(SubscriptionResult, e)
        return SubscriptionResult(
            success=True,
            message="Your subscription will end at the close of the current billing period",
            subscription=_entitlements(subscription),
        )

    @bind_operation_context
    async def reactivate(self, user_id: str) -> SubscriptionResult:
        try:
            subscription = await self.subscriptions.reactivate(user_id)
        except EntitlementError as e:
            return _rejected(SubscriptionResult, e)
        return SubscriptionResult(
            success=True, message="Your subscription has been reactivated", subscription=_entitlements(subscription)
        )

    @bind_operation_context
    async def update_selections(
        self, user_id: str, grade_id: str | None, subject_ids: list[str]
    ) -> SubscriptionResult:
        try:
            subscription = await self.subscriptions.update_selections(user_id, grade_id, subject_ids)
        except EntitlementError as e:
            return _rejected(SubscriptionResult, e)
        return SubscriptionResult(
            success=True, message="Your selections have been saved", subscription=_entitlements(subscription)
        )

    # ── Usage ───────────────────────────────────────────────────────

    @bind_operation_context
    async def charge_tokens(self, user_id: str, amount: int, bypass: bool = False) -> TokenChargeResult:
        try:
            subscription = await self.usage.charge_tokens(user_id, amount, bypass=bypass)
        except EntitlementError as e:
            return _rejected(TokenChargeResult, e)
        snapshot = resolve_entitlements(subscription, subscription.tier)
        return TokenChargeResult(
            success=True,
            message=f"Charged {amount} tokens",
            tokens_used=snapshot.tokens_used,
            token_limit=snapshot.effective_token_limit,
            tokens_remaining=snapshot.tokens_remaining,
        )

    @bind_operation_context
    async def record_paper_access(self, user_id: str, paper_id: str) -> PaperAccessResult:
        try:
            subscription, newly_counted = await self.usage.record_paper_access(user_id, paper_id)
        except EntitlementError as e:
            return _rejected(PaperAccessResult, e, paper_id=paper_id)
        return PaperAccessResult(
            success=True,
            message="Paper access recorded" if newly_counted else "Paper already accessed this period",
            paper_id=paper_id,
            newly_counted=newly_counted,
            papers_used=subscription.papers_accessed_current_period,
            papers_limit=subscription.tier.papers_limit,
        )

    @bind_operation_context
    async def check_study_plan_quota(self, user_id: str) -> StudyPlanQuotaResult:
        try:
            quota = await self.usage.check_study_plan_quota(user_id)
        except EntitlementError as e:
            return _rejected(StudyPlanQuotaResult, e)
        return StudyPlanQuotaResult(
            success=True,
            message="OK" if quota.can_create else "Study plan limit reached",
            quota=StudyPlanQuotaResponse.model_validate(quota),
        )

    @bind_operation_context
    async def create_study_plan(
        self, user_id: str, subject_id: str, grade_id: str | None = None, name: str = ""
    ) -> StudyPlanResult:
        try:
            plan, quota = await self.usage.create_study_plan(user_id, subject_id, grade_id, name)
        except EntitlementError as e:
            return _rejected(StudyPlanResult, e)
        return StudyPlanResult(
            success=True,
            message="Study plan created",
            plan_id=str(plan.id),
            quota=StudyPlanQuotaResponse.model_validate(quota),
        )

    @bind_operation_context
    async def deactivate_study_plan(self, user_id: str, plan_id: str) -> StudyPlanResult:
        try:
            plan = await self.usage.deactivate_study_plan(user_id, plan_id)
        except EntitlementError as e:
            return _rejected(StudyPlanResult, e)
        return StudyPlanResult(success=True, message="Study plan deactivated", plan_id=str(plan.id))

    # ── Referrals & redemption ──────────────────────────────────────

    @bind_operation_context
    async def redeem(self, user_id: str, tier_id: int) -> RedemptionResult:
        try:
            outcome = await self.redemptions.redeem(user_id, tier_id)
        except EntitlementError as e:
            return _rejected(RedemptionResult, e)

        if outcome.reservation is not None:
            return RedemptionResult(
                success=True,
                message="Points reserved. Choose your grade and subjects to activate the plan",
                requires_selection=True,
                reservation=_reservation(outcome.reservation),
                points_balance=outcome.points_balance,
            )
        return RedemptionResult(
            success=True,
            message=f"{outcome.subscription.tier.display_name} activated with {outcome.points_spent} points",
            subscription=_entitlements(outcome.subscription),
            points_balance=outcome.points_balance,
        )

    @bind_operation_context
    async def finalize_redemption(
        self,
        user_id: str,
        grade_id: str | None,
        subject_ids: list[str],
        reservation_id: uuid.UUID | None = None,
    ) -> RedemptionResult:
        try:
            subscription, reservation = await self.redemptions.finalize_redemption(
                user_id, grade_id, subject_ids, reservation_id
            )
        except EntitlementError as e:
            return _rejected(RedemptionResult, e)
        return RedemptionResult(
            success=True,
            message=f"{subscription.tier.display_name} activated",
            reservation=_reservation(reservation),
            subscription=_entitlements(subscription),
        )

    @bind_operation_context
    async def cancel_reservation(self, user_id: str) -> RedemptionResult:
        try:
            reservation, balance = await self.redemptions.cancel_reservation(user_id)
        except EntitlementError as e:
            return _rejected(RedemptionResult, e)
        return RedemptionResult(
            success=True,
            message="Redemption cancelled and points refunded",
            reservation=_reservation(reservation),
            points_balance=balance,
        )

    @bind_operation_context
    async def get_referral_code(self, user_id: str) -> ReferralCodeResult:
        try:
            referral_code = await self.referrals.get_or_create_referral_code(user_id)
        except EntitlementError as e:
            return _rejected(ReferralCodeResult, e)
        return ReferralCodeResult(success=True, message="OK", code=referral_code.code)

    @bind_operation_context
    async def apply_referral_code(self, user_id: str, code: str) -> OperationResult:
        try:
            await self.referrals.apply_referral_code(user_id, code)
        except EntitlementError as e:
            return _rejected(OperationResult, e)
        return OperationResult(success=True, message="Referral code applied")

    @bind_operation_context
    async def get_balance(self, user_id: str) -> PointsBalanceResponse:
        balance = await self.referrals.get_balance(user_id)
        return PointsBalanceResponse.model_validate(balance)

    @bind_operation_context
    async def list_transactions(self, user_id: str, limit: int = 50) -> list[TransactionResponse]:
        transactions = await self.referrals.list_transactions(user_id, limit)
        return [TransactionResponse.model_validate(t) for t in transactions]

    # ── Admin / collaborators ───────────────────────────────────────

    @bind_operation_context
    async def apply_payment(self, outcome: PaymentOutcome) -> SubscriptionResult:
        try:
            subscription = await self.subscriptions.apply_payment(outcome)
        except EntitlementError as e:
            return _rejected(SubscriptionResult, e)
        return SubscriptionResult(
            success=True,
            message=f"{subscription.tier.display_name} activated",
            subscription=_entitlements(subscription),
        )

    @bind_operation_context
    async def grant_token_override(self, user_id: str, token_limit_override: int | None) -> SubscriptionResult:
        try:
            subscription = await self.subscriptions.grant_token_override(user_id, token_limit_override)
        except EntitlementError as e:
            return _rejected(SubscriptionResult, e)
        return SubscriptionResult(
            success=True, message="Token limit updated", subscription=_entitlements(subscription)
        )

    @bind_operation_context
    async def process_period_boundaries(self, now: datetime | None = None) -> RolloverResult:
        counts = await self.subscriptions.process_period_boundaries(now)
        reservations_expired = await self.redemptions.expire_stale_reservations(now)
        return RolloverResult(
            success=True,
            message="Period boundaries processed",
            reservations_expired=reservations_expired,
            **counts,
        )


def get_operations() -> EntitlementOperations:
    """Dependency that provides operations bound to the application database.

    Override this dependency in tests via app.dependency_overrides.
    """
    return EntitlementOperations(get_session_factory())
