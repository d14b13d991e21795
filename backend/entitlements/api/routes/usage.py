"""Usage metering routes: tokens, papers and study plans."""

from fastapi import APIRouter, Depends

from entitlements.core.auth import AuthenticatedUser, is_admin_user, require_auth
from entitlements.schemas.usage import (
    ChargeTokensRequest,
    CreateStudyPlanRequest,
    PaperAccessRequest,
    PaperAccessResult,
    StudyPlanQuotaResult,
    StudyPlanResult,
    TokenChargeResult,
)
from entitlements.services.operations import EntitlementOperations, get_operations

router = APIRouter()


@router.post("/tokens", response_model=TokenChargeResult)
async def charge_tokens(
    body: ChargeTokensRequest,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Record the token cost of a completion. Admin usage is recorded but never blocked."""
    return await operations.charge_tokens(user.user_id, body.amount, bypass=is_admin_user(user))


@router.post("/papers", response_model=PaperAccessResult)
async def record_paper_access(
    body: PaperAccessRequest,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.record_paper_access(user.user_id, body.paper_id)


@router.get("/study-plans/quota", response_model=StudyPlanQuotaResult)
async def study_plan_quota(
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.check_study_plan_quota(user.user_id)


@router.post("/study-plans", response_model=StudyPlanResult)
async def create_study_plan(
    body: CreateStudyPlanRequest,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    """Create a study plan record once the lifetime quota is re-verified."""
    return await operations.create_study_plan(user.user_id, body.subject_id, body.grade_id, body.name)


@router.delete("/study-plans/{plan_id}", response_model=StudyPlanResult)
async def deactivate_study_plan(
    plan_id: str,
    user: AuthenticatedUser = Depends(require_auth),
    operations: EntitlementOperations = Depends(get_operations),
):
    return await operations.deactivate_study_plan(user.user_id, plan_id)
