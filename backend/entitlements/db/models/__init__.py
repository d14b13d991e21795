"""Re-export all models so Base.metadata sees them."""

from entitlements.db.models.paper_access import PaperAccess
from entitlements.db.models.redemption_reservation import RedemptionReservation
from entitlements.db.models.referral import Referral, ReferralCode
from entitlements.db.models.referral_points import ReferralPointsBalance, ReferralTransaction
from entitlements.db.models.study_plan import StudyPlanSchedule
from entitlements.db.models.subscription_tier import SubscriptionTier
from entitlements.db.models.user_subscription import UserSubscription

__all__ = [
    "PaperAccess",
    "RedemptionReservation",
    "Referral",
    "ReferralCode",
    "ReferralPointsBalance",
    "ReferralTransaction",
    "StudyPlanSchedule",
    "SubscriptionTier",
    "UserSubscription",
]
