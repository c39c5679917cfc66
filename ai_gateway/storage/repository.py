"""
Repository functions for data access.

Handles schema creation, plan seeding, subscription persistence, the
atomic daily usage counter and the append-only request audit log.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .db import from_db_timestamp, get_connection, to_db_timestamp
from .models import (
    AuditEntry,
    Plan,
    PlanType,
    Subscription,
    SubscriptionStatus,
    UsageAction,
    UsageRecord,
)

DEFAULT_DB_PATH = "ai_gateway.db"

# Column sizes of the audit log
MAX_AUDIT_INPUT_LENGTH = 5000
MAX_AUDIT_ERROR_LENGTH = 500

_PLAN_COLUMNS = (
    "max_recipe_generations_per_day",
    "max_parse_requests_per_day",
    "max_parse_image_requests_per_day",
    "max_smart_group_requests_per_day",
)

_SUBSCRIPTION_SELECT = """
    SELECT s.id, s.user_id, s.status, s.trial_ends_at,
           s.current_period_start, s.current_period_end,
           s.created_at, s.updated_at,
           p.id, p.type, p.max_recipe_generations_per_day,
           p.max_parse_requests_per_day, p.max_parse_image_requests_per_day,
           p.max_smart_group_requests_per_day
    FROM subscription s
    JOIN plan p ON p.id = s.plan_id
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all gateway tables if they don't exist.

    usage_record is a ledger: rows are created lazily and only ever
    incremented. ai_request_log is append-only.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_account (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS plan (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL UNIQUE,
                max_recipe_generations_per_day INTEGER NOT NULL DEFAULT 0,
                max_parse_requests_per_day INTEGER NOT NULL DEFAULT 0,
                max_parse_image_requests_per_day INTEGER NOT NULL DEFAULT 0,
                max_smart_group_requests_per_day INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS subscription (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL UNIQUE
                    REFERENCES user_account(id) ON DELETE CASCADE,
                plan_id INTEGER NOT NULL REFERENCES plan(id),
                status TEXT NOT NULL,
                trial_ends_at TEXT,
                current_period_start TEXT NOT NULL,
                current_period_end TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS subscription_status_trial_ends_idx
                ON subscription (status, trial_ends_at);

            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL
                    REFERENCES user_account(id) ON DELETE CASCADE,
                action TEXT NOT NULL,
                date TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (user_id, action, date)
            );

            CREATE INDEX IF NOT EXISTS usage_record_user_date_idx
                ON usage_record (user_id, date);

            CREATE TABLE IF NOT EXISTS ai_request_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL
                    REFERENCES user_account(id) ON DELETE CASCADE,
                action TEXT NOT NULL,
                input TEXT NOT NULL,
                output TEXT,
                success INTEGER NOT NULL,
                error_message TEXT,
                duration_ms INTEGER,
                prompt_tokens INTEGER,
                completion_tokens INTEGER,
                total_tokens INTEGER,
                cache_hit INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS ai_request_log_user_id_idx
                ON ai_request_log (user_id);
            CREATE INDEX IF NOT EXISTS ai_request_log_created_at_idx
                ON ai_request_log (created_at);
        """)
    finally:
        conn.close()


def seed_plans(plan_limits: Mapping[PlanType, Any], db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert catalog entries for plan types that are not seeded yet.

    Existing plans are left untouched; the catalog is read-only once seeded.

    Args:
        plan_limits: Plan type to an object carrying the four limit attributes
        db_path: Path to SQLite database file

    Returns:
        Number of plans inserted
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN")
        inserted = 0
        for plan_type, limits in plan_limits.items():
            cursor = conn.execute(
                f"""
                INSERT OR IGNORE INTO plan (type, {", ".join(_PLAN_COLUMNS)})
                VALUES (?, ?, ?, ?, ?)
                """,
                (plan_type.value, *[getattr(limits, col) for col in _PLAN_COLUMNS])
            )
            inserted += cursor.rowcount
        conn.execute("COMMIT")
        return inserted
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def fetch_plans(db_path: str = DEFAULT_DB_PATH) -> Dict[PlanType, Plan]:
    """Fetch the whole plan catalog keyed by plan type."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            f"SELECT id, type, {', '.join(_PLAN_COLUMNS)} FROM plan"
        )
        return {
            PlanType(row[1]): _row_to_plan(row)
            for row in cursor.fetchall()
        }
    finally:
        conn.close()


def insert_user(user_id: str, created_at: datetime, db_path: str = DEFAULT_DB_PATH) -> bool:
    """Register a user id. Returns False if it already existed."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO user_account (id, created_at) VALUES (?, ?)",
            (user_id, to_db_timestamp(created_at))
        )
        return cursor.rowcount == 1
    finally:
        conn.close()


def user_exists(user_id: str, db_path: str = DEFAULT_DB_PATH) -> bool:
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("SELECT 1 FROM user_account WHERE id = ?", (user_id,))
        return cursor.fetchone() is not None
    finally:
        conn.close()


def fetch_subscription(user_id: str, db_path: str = DEFAULT_DB_PATH) -> Optional[Subscription]:
    """Fetch a user's subscription with its plan, or None."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(_SUBSCRIPTION_SELECT + " WHERE s.user_id = ?", (user_id,))
        row = cursor.fetchone()
        return _row_to_subscription(row) if row else None
    finally:
        conn.close()


def insert_subscription(
    user_id: str,
    plan_id: int,
    status: SubscriptionStatus,
    current_period_start: datetime,
    current_period_end: Optional[datetime],
    trial_ends_at: Optional[datetime] = None,
    db_path: str = DEFAULT_DB_PATH
) -> Subscription:
    """Create a user's subscription, or return the one that already exists.

    Two requests may race to create the first subscription for a user; the
    UNIQUE user_id constraint lets exactly one insert win.

    Args:
        user_id: Owning user (must exist in user_account)
        plan_id: Catalog plan id
        status: Initial lifecycle status
        current_period_start: Start of the current billing period
        current_period_end: End of the period, None for indefinite
        trial_ends_at: Trial end, required when status is TRIAL
        db_path: Path to SQLite database file

    Returns:
        The stored subscription

    Raises:
        ValueError: If a trial is created without trial_ends_at
        sqlite3.IntegrityError: If the user or plan does not exist
    """
    if status == SubscriptionStatus.TRIAL and trial_ends_at is None:
        raise ValueError("trial subscriptions require trial_ends_at")

    now = to_db_timestamp(current_period_start)
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO subscription
            (user_id, plan_id, status, trial_ends_at, current_period_start,
             current_period_end, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id) DO NOTHING
        """, (
            user_id,
            plan_id,
            status.value,
            to_db_timestamp(trial_ends_at),
            now,
            to_db_timestamp(current_period_end),
            now,
            now
        ))
        cursor = conn.execute(_SUBSCRIPTION_SELECT + " WHERE s.user_id = ?", (user_id,))
        return _row_to_subscription(cursor.fetchone())
    finally:
        conn.close()


def expire_trials(free_plan_id: int, now: datetime, db_path: str = DEFAULT_DB_PATH) -> int:
    """Demote every trial whose end has passed to the baseline plan.

    A single UPDATE so the transition is atomic. Subscriptions that are not
    in TRIAL status are never touched, which makes repeated runs no-ops.

    Args:
        free_plan_id: Catalog id of the baseline plan
        now: Current time
        db_path: Path to SQLite database file

    Returns:
        Number of subscriptions demoted
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("""
            UPDATE subscription
            SET status = ?, plan_id = ?, current_period_end = NULL, updated_at = ?
            WHERE status = ? AND trial_ends_at IS NOT NULL AND trial_ends_at < ?
        """, (
            SubscriptionStatus.EXPIRED.value,
            free_plan_id,
            to_db_timestamp(now),
            SubscriptionStatus.TRIAL.value,
            to_db_timestamp(now)
        ))
        return cursor.rowcount
    finally:
        conn.close()


def increment_usage(
    user_id: str,
    action: UsageAction,
    date: str,
    daily_limit: int,
    now: datetime,
    db_path: str = DEFAULT_DB_PATH
) -> Tuple[bool, int]:
    """Atomically check a daily counter against its limit and increment it.

    The check and the increment run in one upsert inside a BEGIN IMMEDIATE
    transaction, so concurrent requests for the same (user, action, date)
    are serialized by SQLite and no increment is lost.

    Args:
        user_id: Counting user
        action: Counted action
        date: UTC date as YYYY-MM-DD
        daily_limit: Maximum count for the day, 0 for unlimited
        now: Current time, stored as updated_at
        db_path: Path to SQLite database file

    Returns:
        Tuple of (incremented, count after the operation)
    """
    timestamp = to_db_timestamp(now)
    upsert = """
        INSERT INTO usage_record (user_id, action, date, count, created_at, updated_at)
        VALUES (?, ?, ?, 1, ?, ?)
        ON CONFLICT (user_id, action, date)
        DO UPDATE SET count = count + 1, updated_at = excluded.updated_at
    """
    params: List[Any] = [user_id, action.value, date, timestamp, timestamp]
    if daily_limit > 0:
        upsert += " WHERE usage_record.count < ?"
        params.append(daily_limit)

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        changes_before = conn.total_changes
        conn.execute(upsert, params)
        incremented = conn.total_changes > changes_before
        cursor = conn.execute(
            "SELECT count FROM usage_record WHERE user_id = ? AND action = ? AND date = ?",
            (user_id, action.value, date)
        )
        row = cursor.fetchone()
        conn.execute("COMMIT")
        return incremented, row[0] if row else 0
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def fetch_usage_count(
    user_id: str,
    action: UsageAction,
    date: str,
    db_path: str = DEFAULT_DB_PATH
) -> int:
    """Read a daily counter, 0 when no record exists yet."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "SELECT count FROM usage_record WHERE user_id = ? AND action = ? AND date = ?",
            (user_id, action.value, date)
        )
        row = cursor.fetchone()
        return row[0] if row else 0
    finally:
        conn.close()


def fetch_usage_records(user_id: str, date: str, db_path: str = DEFAULT_DB_PATH) -> List[UsageRecord]:
    """Fetch every counter a user has for one date."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "SELECT user_id, action, date, count FROM usage_record "
            "WHERE user_id = ? AND date = ? ORDER BY action",
            (user_id, date)
        )
        return [
            UsageRecord(
                user_id=row[0],
                action=UsageAction(row[1]),
                date=row[2],
                count=row[3]
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def insert_audit_entry(entry: AuditEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append one entry to the request audit log.

    Input is truncated to 5000 characters and error messages to 500.

    Args:
        entry: The audit entry to record
        db_path: Path to SQLite database file
    """
    error_message = entry.error_message
    if error_message is not None:
        error_message = error_message[:MAX_AUDIT_ERROR_LENGTH]
    output = json.dumps(entry.output, default=str) if entry.output is not None else None

    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO ai_request_log
            (user_id, action, input, output, success, error_message, duration_ms,
             prompt_tokens, completion_tokens, total_tokens, cache_hit, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.user_id,
            entry.action.value,
            entry.input[:MAX_AUDIT_INPUT_LENGTH],
            output,
            int(entry.success),
            error_message,
            entry.duration_ms,
            entry.prompt_tokens,
            entry.completion_tokens,
            entry.total_tokens,
            int(entry.cache_hit),
            to_db_timestamp(entry.created_at or datetime.now().astimezone())
        ))
    finally:
        conn.close()


def fetch_recent_audit_entries(
    user_id: Optional[str] = None,
    action: Optional[UsageAction] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[AuditEntry]:
    """Fetch audit entries, newest first, optionally filtered.

    Args:
        user_id: Optional filter for one user
        action: Optional filter for one action
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of audit entries ordered by creation time (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = """
            SELECT user_id, action, input, output, success, error_message,
                   duration_ms, prompt_tokens, completion_tokens, total_tokens,
                   cache_hit, created_at
            FROM ai_request_log
        """
        params: List[Any] = []
        conditions = []

        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if action:
            conditions.append("action = ?")
            params.append(action.value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        entries = []
        for row in cursor.fetchall():
            entries.append(AuditEntry(
                user_id=row[0],
                action=UsageAction(row[1]),
                input=row[2],
                output=json.loads(row[3]) if row[3] is not None else None,
                success=bool(row[4]),
                error_message=row[5],
                duration_ms=row[6],
                prompt_tokens=row[7],
                completion_tokens=row[8],
                total_tokens=row[9],
                cache_hit=bool(row[10]),
                created_at=from_db_timestamp(row[11])
            ))
        return entries
    finally:
        conn.close()


def _row_to_plan(row: tuple) -> Plan:
    return Plan(
        id=row[0],
        type=PlanType(row[1]),
        max_recipe_generations_per_day=row[2],
        max_parse_requests_per_day=row[3],
        max_parse_image_requests_per_day=row[4],
        max_smart_group_requests_per_day=row[5]
    )


def _row_to_subscription(row: tuple) -> Subscription:
    return Subscription(
        id=row[0],
        user_id=row[1],
        status=SubscriptionStatus(row[2]),
        trial_ends_at=from_db_timestamp(row[3]),
        current_period_start=from_db_timestamp(row[4]),
        current_period_end=from_db_timestamp(row[5]),
        created_at=from_db_timestamp(row[6]),
        updated_at=from_db_timestamp(row[7]),
        plan=_row_to_plan(row[8:])
    )
