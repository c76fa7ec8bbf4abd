"""
Append-only audit trail: one row per webhook status change and one row per
conflicting field. Nothing here updates or deletes existing rows.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from .config import ENTITY_TABLE, STRATEGY_MANUAL, RECENT_LOG_LIMIT
from .dao import StoreUnavailable, count_records
from .db import get_db
from .schema import (
    ConflictRecord,
    FieldConflict,
    WebhookAuditEntry,
    AUDIT_PROCESSED,
    AUDIT_ERROR,
    utcnow,
    parse_timestamp,
)
from ..util.logging import logger


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return {"raw_data": value}


def record_webhook(payload: Any, status: str, error: Optional[str] = None) -> int:
    """Append a webhook audit entry and return its id."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO webhook_audit (payload, status, error_message, created_at) VALUES (?, ?, ?, ?)",
                (_dumps(payload), status, error, utcnow().isoformat())
            )
            conn.commit()
            return cursor.lastrowid
    except sqlite3.Error as e:
        logger.error(f"Failed to record webhook audit entry ({status}): {e}")
        raise StoreUnavailable(str(e)) from e


def record_conflict(table: str, row_id: int, conflicts: List[FieldConflict],
                    resolved_values: Dict[str, Any], strategy: str) -> List[int]:
    """Append one conflict row per conflicting field. Manual-strategy conflicts stay unresolved."""
    now = utcnow().isoformat()
    resolved_at = None if strategy == STRATEGY_MANUAL else now
    ids = []
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            for conflict in conflicts:
                cursor.execute(
                    '''INSERT INTO sync_conflicts
                       (table_name, row_id, field_name, incoming_value, current_value,
                        resolved_value, strategy, resolved_at, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                    (
                        table,
                        row_id,
                        conflict.field,
                        _dumps(conflict.incoming_value),
                        _dumps(conflict.current_value),
                        _dumps(resolved_values.get(conflict.field)),
                        strategy,
                        resolved_at,
                        now
                    )
                )
                ids.append(cursor.lastrowid)
            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Failed to record conflicts for row {row_id} in '{table}': {e}")
        raise StoreUnavailable(str(e)) from e

    for conflict in conflicts:
        logger.log_conflict(table, row_id, conflict.field, resolved_values.get(conflict.field), strategy)
    return ids


def list_conflicts(limit: int = RECENT_LOG_LIMIT) -> List[ConflictRecord]:
    """Most recent conflicts first."""
    if limit <= 0:
        return []
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM sync_conflicts ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,)
            )
            rows = cursor.fetchall()
    except sqlite3.Error as e:
        logger.error(f"Failed to list conflicts: {e}")
        raise StoreUnavailable(str(e)) from e

    return [
        ConflictRecord(
            id=row["id"],
            table_name=row["table_name"],
            row_id=row["row_id"],
            field_name=row["field_name"],
            incoming_value=_loads(row["incoming_value"]),
            current_value=_loads(row["current_value"]),
            resolved_value=_loads(row["resolved_value"]),
            strategy=row["strategy"],
            resolved_at=parse_timestamp(row["resolved_at"]),
            created_at=parse_timestamp(row["created_at"])
        )
        for row in rows
    ]


def list_webhooks(limit: int = RECENT_LOG_LIMIT, status: Optional[str] = None) -> List[WebhookAuditEntry]:
    """Most recent webhook audit entries first, optionally filtered by status."""
    if limit <= 0:
        return []
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            if status:
                cursor.execute(
                    "SELECT * FROM webhook_audit WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                    (status, limit)
                )
            else:
                cursor.execute(
                    "SELECT * FROM webhook_audit ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit,)
                )
            rows = cursor.fetchall()
    except sqlite3.Error as e:
        logger.error(f"Failed to list webhook audit entries: {e}")
        raise StoreUnavailable(str(e)) from e

    return [
        WebhookAuditEntry(
            id=row["id"],
            payload=_loads(row["payload"]),
            status=row["status"],
            error_message=row["error_message"],
            created_at=parse_timestamp(row["created_at"])
        )
        for row in rows
    ]


def _count(sql: str, params: tuple = ()) -> int:
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            result = cursor.fetchone()
            return result[0] if result else 0
    except sqlite3.Error as e:
        logger.error(f"Audit count query failed: {e}")
        raise StoreUnavailable(str(e)) from e


def count_unresolved_conflicts() -> int:
    return _count("SELECT COUNT(*) FROM sync_conflicts WHERE resolved_at IS NULL")


def count_webhooks(status: str) -> int:
    return _count("SELECT COUNT(*) FROM webhook_audit WHERE status = ?", (status,))


def get_sync_status(table: str = ENTITY_TABLE) -> Dict[str, Any]:
    """Aggregate counters for the dashboard."""
    return {
        "totalUsers": count_records(table),
        "unresolved_conflicts": count_unresolved_conflicts(),
        "processed_webhooks": count_webhooks(AUDIT_PROCESSED),
        "failed_webhooks": count_webhooks(AUDIT_ERROR),
        "timestamp": utcnow().isoformat()
    }
