"""
Admin Reports Router - Audit trail and waitlist metrics
"""
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query

from app.db import get_db_connection
from app.middleware import require_admin
from app.utils.helpers import paginate
from app.utils.pricing import ROOM_TIERS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin - Reports"])

WAITLIST_STATUSES = ("ACTIVE", "OFFERED", "COMPLETED", "CANCELLED", "EXPIRED")


@router.get("/audit-log")
def list_audit_log(
    action: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[int] = Query(None),
    staff_id: Optional[int] = Query(None),
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    auth: dict = Depends(require_admin),
):
    """
    Audit entries, newest first.
    Requires: ADMIN
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        filters = [
            ("a.action = %s", action),
            ("a.entity_type = %s", entity_type),
            ("a.entity_id = %s", entity_id),
            ("a.staff_id = %s", staff_id),
            ("a.created_at >= %s", date_from),
            ("a.created_at <= %s", date_to),
        ]
        where_clauses = [clause for clause, value in filters if value is not None]
        params = [value for _, value in filters if value is not None]
        where_sql = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""

        cursor.execute(f"SELECT COUNT(*) as total FROM audit_log a{where_sql}", params)
        total = cursor.fetchone()["total"]

        offset = (page - 1) * limit
        cursor.execute(
            f"""
            SELECT a.id, a.staff_id, s.name as staff_name, a.action, a.entity_type, a.entity_id,
                   a.old_value, a.new_value, a.created_at
            FROM audit_log a
            LEFT JOIN staff s ON a.staff_id = s.id
            {where_sql}
            ORDER BY a.created_at DESC, a.id DESC
            LIMIT %s OFFSET %s
            """,
            params + [limit, offset],
        )
        entries = cursor.fetchall()
        for entry in entries:
            for key in ("old_value", "new_value"):
                if isinstance(entry[key], str):
                    entry[key] = json.loads(entry[key])

        return {"success": True, "data": entries, "pagination": paginate(page, limit, total)}

    except Exception as e:
        logger.error(f"Error listing audit log: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_AUDIT_LOG_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/metrics/waitlist")
def waitlist_metrics(auth: dict = Depends(require_admin)):
    """Entry counts per status and tier, and how long ACTIVE entries have waited"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "SELECT status, desired_tier, COUNT(*) as count FROM waitlist GROUP BY status, desired_tier"
        )
        by_status = {s: 0 for s in WAITLIST_STATUSES}
        by_tier = {tier: {s: 0 for s in WAITLIST_STATUSES} for tier in ROOM_TIERS}
        for row in cursor.fetchall():
            by_status[row["status"]] = by_status.get(row["status"], 0) + row["count"]
            by_tier.setdefault(row["desired_tier"], {})[row["status"]] = row["count"]

        cursor.execute(
            """
            SELECT AVG(TIMESTAMPDIFF(MINUTE, created_at, NOW())) as avg_wait,
                   MAX(TIMESTAMPDIFF(MINUTE, created_at, NOW())) as max_wait
            FROM waitlist WHERE status = 'ACTIVE'
            """
        )
        waits = cursor.fetchone() or {}

        return {
            "success": True,
            "data": {
                "by_status": by_status,
                "by_tier": by_tier,
                "average_wait_minutes": round(float(waits["avg_wait"]), 1) if waits.get("avg_wait") is not None else 0.0,
                "longest_wait_minutes": int(waits["max_wait"]) if waits.get("max_wait") is not None else 0,
            },
        }

    except Exception as e:
        logger.error(f"Error computing waitlist metrics: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "WAITLIST_METRICS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
