"""Admin and collaborator routes for payment outcomes and quota maintenance."""

from fastapi import APIRouter, Depends

from entitlements.core.auth import AuthenticatedUser, require_admin
from entitlements.schemas.subscription import (
    PaymentOutcome,
    RolloverRequest,
    RolloverResult,
    SubscriptionResult,
    TokenOverrideRequest,
)
from entitlements.services.operations import EntitlementOperations, get_operations

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/payments", response_model=SubscriptionResult)
async def record_payment(
    outcome: PaymentOutcome,
    _: AuthenticatedUser = Depends(require_admin),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Record a payment gateway outcome as a tier transition."""
    return await operations.apply_payment(outcome)


@router.post("/users/{user_id}/token-override", response_model=SubscriptionResult)
async def grant_token_override(
    user_id: str,
    body: TokenOverrideRequest,
    _: AuthenticatedUser = Depends(require_admin),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.grant_token_override(user_id, body.token_limit_override)


@router.post("/rollover", response_model=RolloverResult)
async def process_period_boundaries(
    body: RolloverRequest | None = None,
    _: AuthenticatedUser = Depends(require_admin),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Roll over or expire due subscriptions and expire stale reservations.

    Called by the external scheduler; safe to call repeatedly.
    """
    return await operations.process_period_boundaries(body.now if body else None)
