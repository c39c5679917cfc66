"""
Request audit log.

Records every gated model request with its outcome, duration and token
usage. Writing the log is best-effort: failures are logged, never raised.
"""

from typing import Any, List, Optional

from ai_gateway.core.clock import Clock, SystemClock
from ai_gateway.core.token_counter import TokenUsage
from ai_gateway.logging_config import get_logger
from ai_gateway.storage.models import AuditEntry, UsageAction
from ai_gateway.storage.repository import (
    DEFAULT_DB_PATH,
    fetch_recent_audit_entries,
    insert_audit_entry,
)

logger = get_logger(__name__)


class RequestAuditLog:
    """Append-only sink for AuditEntry records."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Optional[Clock] = None):
        self.db_path = db_path
        self.clock = clock or SystemClock()

    def record(
        self,
        user_id: str,
        action: UsageAction,
        input: str,
        output: Optional[Any],
        success: bool,
        duration_ms: int,
        error_message: Optional[str] = None,
        usage: Optional[TokenUsage] = None,
        cache_hit: bool = False
    ) -> bool:
        """Append an entry for one request.

        Args:
            user_id: Requesting user
            action: Gated action
            input: Serialized request input
            output: Result payload, None on failure
            success: Whether the request produced a result
            duration_ms: Wall time of the request
            error_message: Failure reason, None on success
            usage: Token usage if the model reported it
            cache_hit: Whether the result came from the cache

        Returns:
            True if the entry was stored, False if the write failed
        """
        entry = AuditEntry(
            user_id=user_id,
            action=action,
            input=input,
            output=output,
            success=success,
            error_message=error_message,
            duration_ms=duration_ms,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
            total_tokens=usage.total_tokens if usage else None,
            cache_hit=cache_hit,
            created_at=self.clock.now()
        )
        try:
            insert_audit_entry(entry, self.db_path)
        except Exception as e:
            logger.error(
                "Failed to save AI request log",
                action=action.value,
                user_id=user_id,
                error=str(e)
            )
            return False
        return True

    def recent(
        self,
        user_id: Optional[str] = None,
        action: Optional[UsageAction] = None,
        limit: int = 100
    ) -> List[AuditEntry]:
        """Recent entries, newest first."""
        return fetch_recent_audit_entries(user_id, action, limit, self.db_path)
