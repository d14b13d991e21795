"""Public tier catalog."""

from fastapi import APIRouter

from entitlements.db.base import get_session_factory
from entitlements.schemas.subscription import TierResponse
from entitlements.services.tier_catalog import TierCatalog

router = APIRouter()


@router.get("", response_model=list[TierResponse])
async def list_tiers():
    """List active tiers in display order. No authentication required."""
    catalog = TierCatalog(get_session_factory())
    tiers = await catalog.list_tiers()
    return [TierResponse.model_validate(t) for t in tiers]
