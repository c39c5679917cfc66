"""
Subscription lifecycle and plan features.

Resolves a user's plan, creates default and trial subscriptions, answers
feature-flag and quota questions for the plan, and demotes expired trials.

Lifecycle:
    TRIAL -> EXPIRED (automatic, by sweep_expired_trials)
    TRIAL/ACTIVE -> ACTIVE/EXPIRED/CANCELLED (administrative, not handled here)
"""

import sqlite3
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from ai_gateway.core.clock import Clock, SystemClock
from ai_gateway.core.errors import StoreUnavailable, UserNotFound
from ai_gateway.core.quota import QuotaDecision, UsageQuotaLedger
from ai_gateway.logging_config import get_logger
from ai_gateway.storage.models import (
    BASELINE_PLAN,
    TRIAL_PLAN,
    Plan,
    PlanType,
    Subscription,
    SubscriptionStatus,
    UsageAction,
)
from ai_gateway.storage.repository import (
    DEFAULT_DB_PATH,
    expire_trials,
    fetch_plans,
    fetch_subscription,
    insert_subscription,
    user_exists,
)

logger = get_logger(__name__)

TRIAL_DURATION_DAYS = 14


@dataclass(frozen=True)
class PlanFeatures:
    """Feature flags granted by a plan."""
    can_suggest_recipes: bool = False
    can_use_custom_categories: bool = False
    can_use_preferences: bool = False
    can_share_lists: bool = False
    can_parse_from_url: bool = False
    can_parse_from_photo: bool = False


FREE_FEATURES = PlanFeatures()

PRO_FEATURES = PlanFeatures(
    can_suggest_recipes=True,
    can_use_custom_categories=True,
    can_use_preferences=True
)

PREMIUM_FEATURES = PlanFeatures(
    can_suggest_recipes=True,
    can_use_custom_categories=True,
    can_use_preferences=True,
    can_share_lists=True,
    can_parse_from_url=True,
    can_parse_from_photo=True
)

PLAN_FEATURES: Dict[PlanType, PlanFeatures] = {
    PlanType.FREE: FREE_FEATURES,
    PlanType.PRO: PRO_FEATURES,
    PlanType.PREMIUM: PREMIUM_FEATURES,
}

FEATURE_KEYS = tuple(PlanFeatures.__dataclass_fields__)

# Feature a plan must grant before an action may run at all
ACTION_REQUIRED_FEATURES: Dict[UsageAction, str] = {
    UsageAction.RECIPE_SUGGEST: "can_suggest_recipes",
    UsageAction.PARSE_IMAGE: "can_parse_from_photo",
}


def get_plan_features(plan_type: PlanType) -> PlanFeatures:
    """Feature flags for a plan type, falling back to the free tier."""
    return PLAN_FEATURES.get(plan_type, FREE_FEATURES)


@dataclass(frozen=True)
class UsageSummaryItem:
    """Today's usage of one action against the plan limit (0 = unlimited)."""
    action: UsageAction
    current: int
    limit: int


class SubscriptionLifecycle:
    """Subscription state per user, backed by the durable store.

    The plan catalog is cached per instance after the first read; it is
    read-only once seeded.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Optional[Clock] = None,
        ledger: Optional[UsageQuotaLedger] = None,
        trial_duration_days: int = TRIAL_DURATION_DAYS
    ):
        """Initialize the lifecycle.

        Args:
            db_path: Path to SQLite database file
            clock: Time source, defaults to the system clock
            ledger: Usage ledger, defaults to one on the same database
            trial_duration_days: Length of a new trial
        """
        self.db_path = db_path
        self.clock = clock or SystemClock()
        self.ledger = ledger or UsageQuotaLedger(db_path, self.clock)
        self.trial_duration_days = trial_duration_days
        self._plans: Optional[Dict[PlanType, Plan]] = None
        self._plans_lock = threading.Lock()

    def get_plan(self, plan_type: PlanType) -> Plan:
        """Look up a catalog plan.

        Raises:
            StoreUnavailable: If the catalog cannot be read or the plan is not seeded
        """
        with self._plans_lock:
            if self._plans is None:
                try:
                    plans = fetch_plans(self.db_path)
                except sqlite3.Error as e:
                    raise StoreUnavailable(f"Plan catalog read failed: {e}") from e
                if plans:
                    self._plans = plans
            else:
                plans = self._plans

        if plan_type not in plans:
            raise StoreUnavailable(f"Plan \"{plan_type.value}\" is not seeded")
        return plans[plan_type]

    def get_subscription(self, user_id: str) -> Subscription:
        """Return the user's subscription, creating a free one if absent.

        Args:
            user_id: User to resolve

        Returns:
            The user's current subscription

        Raises:
            UserNotFound: If the user does not exist
            StoreUnavailable: If the store cannot be read or written
        """
        try:
            subscription = fetch_subscription(user_id, self.db_path)
            if subscription is not None:
                return subscription

            if not user_exists(user_id, self.db_path):
                raise UserNotFound(user_id)

            free_plan = self.get_plan(BASELINE_PLAN)
            subscription = insert_subscription(
                user_id,
                free_plan.id,
                SubscriptionStatus.ACTIVE,
                current_period_start=self.clock.now(),
                current_period_end=None,
                db_path=self.db_path
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Subscription lookup failed: {e}") from e

        logger.info("Created default subscription", user_id=user_id, plan=BASELINE_PLAN.value)
        return subscription

    def create_trial_subscription(self, user_id: str) -> Subscription:
        """Start a trial of the mid tier for a user without a subscription.

        A user who already has a subscription keeps it unchanged; a trial is
        only granted once.

        Args:
            user_id: User starting the trial

        Returns:
            The trial subscription, or the existing subscription

        Raises:
            UserNotFound: If the user does not exist
            StoreUnavailable: If the store cannot be read or written
        """
        try:
            existing = fetch_subscription(user_id, self.db_path)
            if existing is not None:
                logger.info(
                    "Subscription already exists, trial not granted",
                    user_id=user_id,
                    status=existing.status.value
                )
                return existing

            if not user_exists(user_id, self.db_path):
                raise UserNotFound(user_id)

            trial_plan = self.get_plan(TRIAL_PLAN)
            now = self.clock.now()
            trial_ends_at = now + timedelta(days=self.trial_duration_days)
            subscription = insert_subscription(
                user_id,
                trial_plan.id,
                SubscriptionStatus.TRIAL,
                current_period_start=now,
                current_period_end=trial_ends_at,
                trial_ends_at=trial_ends_at,
                db_path=self.db_path
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Trial creation failed: {e}") from e

        logger.info(
            "Created trial subscription",
            user_id=user_id,
            plan=TRIAL_PLAN.value,
            trial_ends_at=trial_ends_at.isoformat()
        )
        return subscription

    def check_feature(self, user_id: str, feature: str) -> bool:
        """Whether the user's current plan grants a feature.

        Raises:
            ValueError: If the feature name is unknown
        """
        if feature not in FEATURE_KEYS:
            raise ValueError(f"Unknown feature: {feature}")
        subscription = self.get_subscription(user_id)
        return bool(getattr(get_plan_features(subscription.plan.type), feature))

    def check_and_increment_usage(self, user_id: str, action: UsageAction) -> QuotaDecision:
        """Consume one unit of the user's daily quota for an action."""
        subscription = self.get_subscription(user_id)
        limit = subscription.plan.limit_for(action)
        return self.ledger.check_and_increment(user_id, action, limit)

    def get_usage_summary(self, user_id: str) -> List[UsageSummaryItem]:
        """Today's usage for every action against the user's plan limits."""
        subscription = self.get_subscription(user_id)
        return [
            UsageSummaryItem(
                action=action,
                current=self.ledger.get_count(user_id, action),
                limit=subscription.plan.limit_for(action)
            )
            for action in UsageAction
        ]

    def sweep_expired_trials(self) -> int:
        """Demote trials whose end date has passed to the free plan.

        Idempotent: only subscriptions still in TRIAL status are changed.

        Returns:
            Number of subscriptions demoted

        Raises:
            StoreUnavailable: If the store cannot be updated
        """
        free_plan = self.get_plan(BASELINE_PLAN)
        try:
            count = expire_trials(free_plan.id, self.clock.now(), self.db_path)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Trial sweep failed: {e}") from e

        if count > 0:
            logger.info("Expired trial subscriptions downgraded to free", count=count)
        return count
