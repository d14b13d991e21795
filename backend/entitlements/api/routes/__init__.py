from fastapi import APIRouter

from entitlements.api.routes import admin, health, referrals, subscription, tiers, usage

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(tiers.router, prefix="/tiers", tags=["tiers"])
api_router.include_router(subscription.router, prefix="/subscription", tags=["subscription"])
api_router.include_router(usage.router, prefix="/usage", tags=["usage"])
api_router.include_router(referrals.router, prefix="/referrals", tags=["referrals"])
api_router.include_router(admin.router, tags=["admin"])
