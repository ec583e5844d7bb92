"""
Timeclock Router - Staff clock in/out, breaks, own schedule and time off
"""
import logging
from datetime import datetime, date
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.utils.audit import log_audit

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Timeclock"])


# ============== Request Models ==============

class ClockRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=255)


class BreakStartRequest(BaseModel):
    break_type: str = Field(..., pattern=r"^(MEAL|REST)$")
    notes: Optional[str] = Field(None, max_length=255)


class BreakEndRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=255)


class TimeOffCreate(BaseModel):
    day: date
    reason: Optional[str] = Field(None, max_length=255)


# ============== Helpers ==============

def _open_session(cursor, staff_id: int, lock: bool = False) -> Optional[dict]:
    cursor.execute(
        f"""
        SELECT id, staff_id, clock_in_at, clock_out_at, notes
        FROM timeclock_sessions
        WHERE staff_id = %s AND clock_out_at IS NULL
        ORDER BY clock_in_at DESC
        LIMIT 1
        {"FOR UPDATE" if lock else ""}
        """,
        (staff_id,),
    )
    return cursor.fetchone()


def _open_break(cursor, staff_id: int, lock: bool = False) -> Optional[dict]:
    cursor.execute(
        f"""
        SELECT id, timeclock_session_id, break_type, started_at, notes
        FROM staff_break_sessions
        WHERE staff_id = %s AND ended_at IS NULL
        ORDER BY started_at DESC
        LIMIT 1
        {"FOR UPDATE" if lock else ""}
        """,
        (staff_id,),
    )
    return cursor.fetchone()


# ============== Timeclock ==============

@router.post("/timeclock/clock-in")
def clock_in(request: ClockRequest, auth: dict = Depends(verify_bearer_token)):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        staff_id = auth["staff_id"]
        if _open_session(cursor, staff_id, lock=True):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "ALREADY_CLOCKED_IN", "message": "Already clocked in"},
            )

        now = datetime.now()
        cursor.execute(
            "INSERT INTO timeclock_sessions (staff_id, clock_in_at, notes) VALUES (%s, %s, %s)",
            (staff_id, now, request.notes),
        )
        session_id = cursor.lastrowid
        conn.commit()

        return {
            "success": True,
            "message": "Clocked in",
            "data": {"id": session_id, "staff_id": staff_id, "clock_in_at": now},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error clocking in: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CLOCK_IN_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/timeclock/clock-out")
def clock_out(request: ClockRequest, auth: dict = Depends(verify_bearer_token)):
    """Close the open timeclock session, and any break still running"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        staff_id = auth["staff_id"]
        session = _open_session(cursor, staff_id, lock=True)
        if not session:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "NOT_CLOCKED_IN", "message": "No open timeclock session"},
            )

        now = datetime.now()
        cursor.execute(
            "UPDATE staff_break_sessions SET ended_at = %s WHERE staff_id = %s AND ended_at IS NULL",
            (now, staff_id),
        )
        cursor.execute(
            "UPDATE timeclock_sessions SET clock_out_at = %s, notes = COALESCE(%s, notes) WHERE id = %s",
            (now, request.notes, session["id"]),
        )
        conn.commit()

        return {
            "success": True,
            "message": "Clocked out",
            "data": {
                "id": session["id"],
                "clock_in_at": session["clock_in_at"],
                "clock_out_at": now,
            },
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error clocking out: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CLOCK_OUT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


# ============== Breaks ==============

@router.post("/breaks/start")
def start_break(request: BreakStartRequest, auth: dict = Depends(verify_bearer_token)):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        staff_id = auth["staff_id"]
        if _open_break(cursor, staff_id, lock=True):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "BREAK_IN_PROGRESS", "message": "Break already in progress"},
            )

        session = _open_session(cursor, staff_id)
        if not session:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "NOT_CLOCKED_IN", "message": "No active timeclock session"},
            )

        now = datetime.now()
        cursor.execute(
            """
            INSERT INTO staff_break_sessions (staff_id, timeclock_session_id, break_type, notes, started_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (staff_id, session["id"], request.break_type, request.notes, now),
        )
        break_id = cursor.lastrowid
        conn.commit()

        return {
            "success": True,
            "message": "Break started",
            "data": {
                "id": break_id,
                "timeclock_session_id": session["id"],
                "break_type": request.break_type,
                "started_at": now,
            },
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error starting break: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "START_BREAK_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/breaks/end")
def end_break(request: BreakEndRequest, auth: dict = Depends(verify_bearer_token)):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        current = _open_break(cursor, auth["staff_id"], lock=True)
        if not current:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "NO_ACTIVE_BREAK", "message": "No active break found"},
            )

        now = datetime.now()
        cursor.execute(
            "UPDATE staff_break_sessions SET ended_at = %s, notes = COALESCE(%s, notes) WHERE id = %s",
            (now, request.notes, current["id"]),
        )
        conn.commit()

        return {
            "success": True,
            "message": "Break ended",
            "data": {
                "id": current["id"],
                "break_type": current["break_type"],
                "started_at": current["started_at"],
                "ended_at": now,
            },
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error ending break: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "END_BREAK_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


# ============== Schedule & Time Off ==============

@router.get("/schedule/me")
def my_schedule(
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    auth: dict = Depends(verify_bearer_token),
):
    """Own shifts, without any compliance figures"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_clauses = ["es.staff_id = %s"]
        params = [auth["staff_id"]]
        if date_from:
            where_clauses.append("es.starts_at >= %s")
            params.append(date_from)
        if date_to:
            where_clauses.append("es.ends_at <= %s")
            params.append(date_to)

        cursor.execute(
            f"""
            SELECT es.id, es.staff_id, s.name as staff_name, es.shift_code,
                   es.starts_at, es.ends_at, es.status, es.notes
            FROM employee_shifts es
            JOIN staff s ON s.id = es.staff_id
            WHERE {" AND ".join(where_clauses)}
            ORDER BY es.starts_at
            """,
            params,
        )
        return {"success": True, "data": cursor.fetchall()}

    except Exception as e:
        logger.error(f"Error loading schedule: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_SCHEDULE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/timeoff", status_code=status.HTTP_201_CREATED)
def request_time_off(request: TimeOffCreate, auth: dict = Depends(verify_bearer_token)):
    """One request per staff member per day"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        staff_id = auth["staff_id"]
        cursor.execute(
            "SELECT id FROM timeoff_requests WHERE staff_id = %s AND day = %s",
            (staff_id, request.day),
        )
        if cursor.fetchone():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "error_code": "TIMEOFF_EXISTS",
                    "message": "A time off request already exists for that day",
                },
            )

        cursor.execute(
            "INSERT INTO timeoff_requests (staff_id, day, reason) VALUES (%s, %s, %s)",
            (staff_id, request.day, request.reason),
        )
        request_id = cursor.lastrowid
        log_audit(conn, staff_id, "TIME_OFF_REQUESTED", "timeoff_request", request_id,
                  new_value={"day": request.day, "reason": request.reason})
        conn.commit()

        return {
            "success": True,
            "message": "Time off requested",
            "data": {"id": request_id, "day": request.day, "status": "PENDING"},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error requesting time off: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "REQUEST_TIMEOFF_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/timeoff/me")
def my_time_off(auth: dict = Depends(verify_bearer_token)):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            """
            SELECT id, day, reason, status, decided_at, created_at
            FROM timeoff_requests
            WHERE staff_id = %s
            ORDER BY day DESC
            """,
            (auth["staff_id"],),
        )
        return {"success": True, "data": cursor.fetchall()}

    except Exception as e:
        logger.error(f"Error listing time off: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_TIMEOFF_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
