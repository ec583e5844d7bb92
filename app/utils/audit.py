"""
Audit Logging Utility
Centralized audit trail for inventory, checkout, waitlist and timeclock changes
"""
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ["pin", "pin_hash", "token", "secret", "signature_text"]


def log_audit(
    conn,
    staff_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    old_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None,
):
    """
    Write one row to audit_log inside the caller's transaction.

    Args:
        conn: Database connection (caller commits)
        staff_id: Staff member performing the action, None for system jobs
        action: e.g. STATUS_CHANGE, OVERRIDE, WAITLIST_OFFERED, TIMECLOCK_ADJUSTED
        entity_type: room, locker, waitlist, checkout_request, timeclock_session...
        entity_id: ID of the affected row
        old_value: Previous values
        new_value: New values
    """
    cursor = conn.cursor()

    try:
        old_json = json.dumps(sanitize_for_audit(old_value), default=str) if old_value else None
        new_json = json.dumps(sanitize_for_audit(new_value), default=str) if new_value else None

        cursor.execute(
            """
            INSERT INTO audit_log (
                staff_id, action, entity_type, entity_id,
                old_value, new_value, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                staff_id,
                action,
                entity_type,
                entity_id,
                old_json,
                new_json,
                datetime.now(),
            ),
        )
        cursor.close()

    except Exception as e:
        cursor.close()
        # Audit failures must not abort the main operation
        logger.warning(f"Audit logging failed: {str(e)}")


def sanitize_for_audit(data: Dict[str, Any], exclude_fields: list = None) -> Dict[str, Any]:
    """
    Redact sensitive fields before they reach the audit table.
    """
    if not data:
        return {}

    all_excludes = SENSITIVE_FIELDS + (exclude_fields or [])

    sanitized = dict(data)
    for field in all_excludes:
        if field in sanitized:
            sanitized[field] = "***REDACTED***"

    return sanitized
