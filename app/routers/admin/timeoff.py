import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import require_admin
from app.utils.audit import log_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/timeoff", tags=["Admin - Time Off"])


class TimeOffDecision(BaseModel):
    status: str = Field(..., pattern=r"^(APPROVED|DENIED)$")


@router.get("")
def list_time_off(
    request_status: Optional[str] = Query(None, alias="status", pattern=r"^(PENDING|APPROVED|DENIED)$"),
    auth: dict = Depends(require_admin),
):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_sql = ""
        params = []
        if request_status:
            where_sql = " WHERE t.status = %s"
            params.append(request_status)

        cursor.execute(
            f"""
            SELECT t.id, t.staff_id, s.name as staff_name, t.day, t.reason, t.status,
                   t.decided_by_staff_id, d.name as decided_by_name, t.decided_at, t.created_at
            FROM timeoff_requests t
            JOIN staff s ON s.id = t.staff_id
            LEFT JOIN staff d ON d.id = t.decided_by_staff_id
            {where_sql}
            ORDER BY t.day
            """,
            params,
        )
        return {"success": True, "data": cursor.fetchall()}

    except Exception as e:
        logger.error(f"Error listing time off requests: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_TIMEOFF_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{request_id}/decide")
def decide_time_off(request_id: int, request: TimeOffDecision, auth: dict = Depends(require_admin)):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT id, status FROM timeoff_requests WHERE id = %s FOR UPDATE", (request_id,))
        row = cursor.fetchone()
        if not row:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "TIMEOFF_NOT_FOUND", "message": "Time off request not found"},
            )

        now = datetime.now()
        cursor.execute(
            "UPDATE timeoff_requests SET status = %s, decided_by_staff_id = %s, decided_at = %s WHERE id = %s",
            (request.status, auth["staff_id"], now, request_id),
        )
        log_audit(conn, auth["staff_id"], "TIME_OFF_DECIDED", "timeoff_request", request_id,
                  old_value={"status": row["status"]},
                  new_value={"status": request.status})
        conn.commit()

        return {
            "success": True,
            "message": f"Time off {request.status.lower()}",
            "data": {"id": request_id, "status": request.status, "decided_at": now},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error deciding time off {request_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "DECIDE_TIMEOFF_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
