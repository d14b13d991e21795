class EntitlementError(Exception):
    """Base exception for entitlement and metering failures.

    Every subclass carries a stable ``code`` that is returned to clients
    alongside the human-readable message.
    """

    code = "entitlement_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class QuotaExceededError(EntitlementError):
    """Raised when a consumable limit (tokens, papers, study plans) would be exceeded."""

    code = "quota_exceeded"

    def __init__(self, resource: str, limit: int, used: int, message: str | None = None):
        self.resource = resource
        self.limit = limit
        self.used = used
        super().__init__(message or f"{resource.replace('_', ' ').capitalize()} limit reached ({used}/{limit})")


class InsufficientPointsError(EntitlementError):
    """Raised when a redemption costs more points than the user holds."""

    code = "insufficient_points"

    def __init__(self, balance: int, cost: int):
        self.balance = balance
        self.cost = cost
        super().__init__(f"Insufficient points: {cost} required, {balance} available")


class InvalidSelectionError(EntitlementError):
    """Raised when a grade/subject selection violates the tier's bounds."""

    code = "invalid_selection"


class NoActiveSubscriptionError(EntitlementError):
    """Raised when an operation needs an active subscription and none exists."""

    code = "no_active_subscription"

    def __init__(self, message: str = "No active subscription found"):
        super().__init__(message)


class ConcurrentModificationError(EntitlementError):
    """Raised when a concurrent writer won a race. Safe to retry once."""

    code = "concurrent_modification"


class ExternalServiceFailureError(EntitlementError):
    """Raised when a collaborator (payment gateway, AI service) reports a failure."""

    code = "external_service_failure"

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(message)


class TierNotFoundError(EntitlementError):
    """Raised when a tier id/name is unknown or not available."""

    code = "tier_not_found"

    def __init__(self, tier: str):
        self.tier = tier
        super().__init__(f"Tier not found: {tier}")


class ReservationError(EntitlementError):
    """Raised when a redemption reservation is missing, expired or superseded."""

    code = "reservation_error"
