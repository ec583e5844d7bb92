"""
Admin Timeclock Router - Review and correct staff clock sessions
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import require_admin
from app.utils.audit import log_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/timeclock", tags=["Admin - Timeclock"])


# ============== Request Models ==============

class TimeclockAdjustRequest(BaseModel):
    clock_in_at: Optional[datetime] = None
    clock_out_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=255)


class TimeclockCloseRequest(BaseModel):
    clock_out_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=255)


# ============== Helpers ==============

def _load_session(cursor, session_id: int) -> dict:
    cursor.execute(
        "SELECT id, staff_id, clock_in_at, clock_out_at, notes FROM timeclock_sessions WHERE id = %s FOR UPDATE",
        (session_id,),
    )
    session = cursor.fetchone()
    if not session:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "TIMECLOCK_NOT_FOUND", "message": "Timeclock session not found"},
        )
    return session


# ============== Endpoints ==============

@router.get("")
def list_timeclock(
    staff_id: Optional[int] = Query(None),
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    auth: dict = Depends(require_admin),
):
    """Clock sessions with the minutes spent on breaks"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_clauses = []
        params = []
        if date_from:
            where_clauses.append("ts.clock_in_at >= %s")
            params.append(date_from)
        if date_to:
            where_clauses.append("ts.clock_in_at <= %s")
            params.append(date_to)
        if staff_id:
            where_clauses.append("ts.staff_id = %s")
            params.append(staff_id)
        where_sql = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""

        cursor.execute(
            f"""
            SELECT ts.id, ts.staff_id, s.name as staff_name, ts.clock_in_at, ts.clock_out_at, ts.notes,
                   COALESCE(SUM(TIMESTAMPDIFF(MINUTE, b.started_at, COALESCE(b.ended_at, NOW()))), 0)
                       as break_minutes
            FROM timeclock_sessions ts
            JOIN staff s ON s.id = ts.staff_id
            LEFT JOIN staff_break_sessions b ON b.timeclock_session_id = ts.id
            {where_sql}
            GROUP BY ts.id, ts.staff_id, s.name, ts.clock_in_at, ts.clock_out_at, ts.notes
            ORDER BY ts.clock_in_at DESC
            """,
            params,
        )
        rows = cursor.fetchall()
        for row in rows:
            row["break_minutes"] = int(row["break_minutes"])

        return {"success": True, "data": rows}

    except Exception as e:
        logger.error(f"Error listing timeclock sessions: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_TIMECLOCK_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.patch("/{session_id}")
def adjust_timeclock(session_id: int, request: TimeclockAdjustRequest, auth: dict = Depends(require_admin)):
    """Manager correction of clock times"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, session_id)

        clock_in_at = request.clock_in_at or session["clock_in_at"]
        clock_out_at = request.clock_out_at or session["clock_out_at"]
        if clock_out_at and clock_out_at < clock_in_at:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "INVALID_TIME_RANGE", "message": "clock_out_at must be after clock_in_at"},
            )

        notes = request.notes if request.notes is not None else session["notes"]
        cursor.execute(
            "UPDATE timeclock_sessions SET clock_in_at = %s, clock_out_at = %s, notes = %s WHERE id = %s",
            (clock_in_at, clock_out_at, notes, session_id),
        )
        log_audit(conn, auth["staff_id"], "TIMECLOCK_ADJUSTED", "timeclock_session", session_id,
                  old_value={
                      "clock_in_at": session["clock_in_at"],
                      "clock_out_at": session["clock_out_at"],
                      "notes": session["notes"],
                  },
                  new_value={"clock_in_at": clock_in_at, "clock_out_at": clock_out_at, "notes": notes})
        conn.commit()

        return {
            "success": True,
            "message": "Timeclock session updated",
            "data": {"id": session_id, "clock_in_at": clock_in_at, "clock_out_at": clock_out_at, "notes": notes},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error adjusting timeclock {session_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "ADJUST_TIMECLOCK_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{session_id}/close")
def close_timeclock(session_id: int, request: TimeclockCloseRequest, auth: dict = Depends(require_admin)):
    """Close a session someone forgot to clock out of"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, session_id)
        if session["clock_out_at"] is not None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "ALREADY_CLOSED", "message": "Timeclock session is already closed"},
            )

        clock_out_at = request.clock_out_at or datetime.now()
        if clock_out_at < session["clock_in_at"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "INVALID_TIME_RANGE", "message": "clock_out_at must be after clock_in_at"},
            )

        notes = request.notes if request.notes is not None else session["notes"]
        cursor.execute(
            "UPDATE timeclock_sessions SET clock_out_at = %s, notes = %s WHERE id = %s",
            (clock_out_at, notes, session_id),
        )
        cursor.execute(
            "UPDATE staff_break_sessions SET ended_at = %s WHERE timeclock_session_id = %s AND ended_at IS NULL",
            (clock_out_at, session_id),
        )
        log_audit(conn, auth["staff_id"], "TIMECLOCK_CLOSED", "timeclock_session", session_id,
                  old_value={"clock_out_at": None},
                  new_value={"clock_out_at": clock_out_at, "notes": notes})
        conn.commit()

        return {
            "success": True,
            "message": "Timeclock session closed",
            "data": {"id": session_id, "clock_out_at": clock_out_at},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error closing timeclock {session_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CLOSE_TIMECLOCK_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
