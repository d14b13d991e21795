"""Referral code, points balance and redemption routes."""

from fastapi import APIRouter, Depends, Query

from entitlements.core.auth import AuthenticatedUser, require_auth
from entitlements.schemas.referrals import (
    ApplyReferralRequest,
    FinalizeRedemptionRequest,
    PointsBalanceResponse,
    RedeemRequest,
    RedemptionResult,
    ReferralCodeResult,
    TransactionResponse,
)
from entitlements.schemas.results import OperationResult
from entitlements.services.operations import EntitlementOperations, get_operations

router = APIRouter()


@router.post("/redeem", response_model=RedemptionResult)
async def redeem(
    body: RedeemRequest,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Spend points on a tier. Selection tiers return a reservation to finalize."""
    return await operations.redeem(user.user_id, body.tier_id)


@router.post("/redeem/finalize", response_model=RedemptionResult)
async def finalize_redemption(
    body: FinalizeRedemptionRequest,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.finalize_redemption(user.user_id, body.grade_id, body.subject_ids, body.reservation_id)


@router.post("/redeem/cancel", response_model=RedemptionResult)
async def cancel_redemption(
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.cancel_reservation(user.user_id)


@router.get("/code", response_model=ReferralCodeResult)
async def referral_code(
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.get_referral_code(user.user_id)


@router.post("/apply", response_model=OperationResult)
async def apply_referral_code(
    body: ApplyReferralRequest,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.apply_referral_code(user.user_id, body.code)


@router.get("/balance", response_model=PointsBalanceResponse)
async def points_balance(
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.get_balance(user.user_id)


@router.get("/transactions", response_model=list[TransactionResponse])
async def points_transactions(
    limit: int = Query(50, ge=1, le=200),
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.list_transactions(user.user_id, limit)
