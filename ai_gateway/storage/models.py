"""
Data models for storage layer.

Defines plans, subscriptions, usage records and audit entries.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class UsageAction(Enum):
    """Quota-limited operations that call the model."""
    RECIPE_GENERATION = "recipe_generation"
    RECIPE_PARSE = "recipe_parse"
    PARSE_IMAGE = "parse_image"
    RECIPE_SUGGEST = "recipe_suggest"
    SMART_GROUP = "smart_group"


class PlanType(Enum):
    """Subscription tiers, lowest first."""
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


class SubscriptionStatus(Enum):
    """Subscription lifecycle states."""
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Baseline tier after a trial expires, and the tier a trial grants
BASELINE_PLAN = PlanType.FREE
TRIAL_PLAN = PlanType.PRO

# Which plan column limits each action; suggestions share the generation limit
ACTION_LIMIT_FIELDS = {
    UsageAction.RECIPE_GENERATION: "max_recipe_generations_per_day",
    UsageAction.RECIPE_PARSE: "max_parse_requests_per_day",
    UsageAction.PARSE_IMAGE: "max_parse_image_requests_per_day",
    UsageAction.RECIPE_SUGGEST: "max_recipe_generations_per_day",
    UsageAction.SMART_GROUP: "max_smart_group_requests_per_day",
}


@dataclass(frozen=True)
class Plan:
    """Immutable catalog entry. A limit of 0 means unlimited."""
    id: int
    type: PlanType
    max_recipe_generations_per_day: int
    max_parse_requests_per_day: int
    max_parse_image_requests_per_day: int
    max_smart_group_requests_per_day: int

    def limit_for(self, action: UsageAction) -> int:
        """Daily limit that applies to an action."""
        return getattr(self, ACTION_LIMIT_FIELDS[action])


@dataclass(frozen=True)
class Subscription:
    """A user's current plan and lifecycle state."""
    id: int
    user_id: str
    plan: Plan
    status: SubscriptionStatus
    trial_ends_at: Optional[datetime]
    current_period_start: datetime
    current_period_end: Optional[datetime]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Count of one action for one user on one UTC date (YYYY-MM-DD)."""
    user_id: str
    action: UsageAction
    date: str
    count: int


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one gated model request.

    Append-only: written once per gateway invocation whatever the outcome.
    """
    user_id: str
    action: UsageAction
    input: str
    output: Optional[Any]
    success: bool
    error_message: Optional[str]
    duration_ms: int
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cache_hit: bool = False
    created_at: Optional[datetime] = None
