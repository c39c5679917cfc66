"""
Daily usage quota ledger.

Counts quota-limited actions per user per UTC calendar date and decides
whether another action is allowed. Quotas reset at midnight UTC, not 24
hours after first use.
"""

import sqlite3
from dataclasses import dataclass
from typing import Optional

from ai_gateway.core.clock import Clock, SystemClock
from ai_gateway.core.errors import StoreUnavailable
from ai_gateway.logging_config import get_logger
from ai_gateway.storage.models import UsageAction
from ai_gateway.storage.repository import (
    DEFAULT_DB_PATH,
    fetch_usage_count,
    increment_usage,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check. limit == 0 means unlimited."""
    allowed: bool
    current: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == 0


class UsageQuotaLedger:
    """Per-user, per-action, per-day counters with check-and-increment."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Optional[Clock] = None):
        self.db_path = db_path
        self.clock = clock or SystemClock()

    def check_and_increment(
        self,
        user_id: str,
        action: UsageAction,
        daily_limit: int
    ) -> QuotaDecision:
        """Consume one unit of today's quota if any is left.

        With daily_limit == 0 the call is always allowed and still counted.
        Otherwise the counter is incremented only while it is below the
        limit; a denied call leaves it unchanged.

        Args:
            user_id: Requesting user
            action: Quota-limited action
            daily_limit: Maximum actions per day, 0 for unlimited

        Returns:
            QuotaDecision with the count after this call

        Raises:
            ValueError: If daily_limit is negative
            StoreUnavailable: If the counter cannot be read or written
        """
        if daily_limit < 0:
            raise ValueError("daily_limit must be >= 0")

        now = self.clock.now()
        try:
            incremented, current = increment_usage(
                user_id,
                action,
                self.clock.today(),
                daily_limit,
                now,
                self.db_path
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Usage counter update failed: {e}") from e

        if not incremented:
            logger.info(
                "Daily quota exhausted",
                user_id=user_id,
                action=action.value,
                current=current,
                limit=daily_limit
            )
        return QuotaDecision(allowed=incremented, current=current, limit=daily_limit)

    def get_count(self, user_id: str, action: UsageAction) -> int:
        """Today's count for a user and action.

        Raises:
            StoreUnavailable: If the counter cannot be read
        """
        try:
            return fetch_usage_count(user_id, action, self.clock.today(), self.db_path)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Usage counter read failed: {e}") from e
