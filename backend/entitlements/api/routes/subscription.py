"""Subscription lifecycle routes for the signed-in user."""

from fastapi import APIRouter, Depends

from entitlements.core.auth import AuthenticatedUser, require_auth
from entitlements.schemas.subscription import CancelRequest, SelectionsRequest, SubscriptionResult
from entitlements.services.operations import EntitlementOperations, get_operations

router = APIRouter()


@router.post("/ensure", response_model=SubscriptionResult)
async def ensure_subscription(
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Return the active subscription, provisioning the free tier on first call."""
    return await operations.ensure_subscription(user.user_id)


@router.get("", response_model=SubscriptionResult)
async def get_subscription(
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Resolved tier, limits, usage and carryover for the active subscription."""
    return await operations.get_entitlements(user.user_id)


@router.post("/cancel", response_model=SubscriptionResult)
async def cancel_subscription(
    body: CancelRequest | None = None,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    reason = body.reason if body else None
    return await operations.cancel_at_period_end(user.user_id, reason)


@router.post("/reactivate", response_model=SubscriptionResult)
async def reactivate_subscription(
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.reactivate(user.user_id)


@router.post("/selections", response_model=SubscriptionResult)
async def update_selections(
    body: SelectionsRequest,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Set grade and subjects for tiers that scope access by selection."""
    return await operations.update_selections(user.user_id, body.grade_id, body.subject_ids)
