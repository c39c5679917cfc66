"""
Typed errors raised by the gateway.

Policy denials (feature and quota gates) derive from AccessDenied, upstream
model failures from ModelCallError. Cache and audit failures are never
raised; they are logged where they happen.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for every error the gateway surfaces to its callers."""


class AccessDenied(GatewayError):
    """Raised when a plan or quota gate rejects a request."""


class FeatureNotAvailable(AccessDenied):
    """Raised when the user's plan does not include a required feature."""
    def __init__(self, feature: str, plan_type: Optional[str] = None):
        message = (
            f"This feature requires a plan upgrade. "
            f"Your current plan does not include \"{feature}\"."
        )
        super().__init__(message)
        self.feature = feature
        self.plan_type = plan_type


class QuotaExceeded(AccessDenied):
    """Raised when the user's daily allotment for an action is used up."""
    def __init__(self, action: str, current: int, limit: int):
        super().__init__(
            f"Daily limit reached ({current}/{limit}). Upgrade your plan for more."
        )
        self.action = action
        self.current = current
        self.limit = limit


class ModelCallError(GatewayError):
    """Base class for failures of the upstream model call."""


class EmptyResponse(ModelCallError):
    """Raised when the model returns no text."""


class InvalidModelOutput(ModelCallError):
    """Raised when model output cannot be parsed or fails validation."""
    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class ModelTimeout(ModelCallError):
    """Raised when the model call exceeds its timeout."""


class ModelUnavailable(ModelCallError):
    """Raised when the model provider rejects or fails the request."""


class StoreUnavailable(GatewayError):
    """Raised when quota or subscription persistence fails."""


class UserNotFound(GatewayError):
    """Raised when a subscription is requested for an unknown user."""
    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id
