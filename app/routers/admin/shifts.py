import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import require_admin
from app.utils.audit import log_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shifts", tags=["Admin - Shifts"])


# ============== Request Models ==============

class ShiftCreateRequest(BaseModel):
    staff_id: int
    starts_at: datetime
    ends_at: datetime
    shift_code: Optional[str] = Field(None, pattern=r"^(A|B|C)$")
    notes: Optional[str] = Field(None, max_length=255)


class ShiftUpdateRequest(BaseModel):
    staff_id: Optional[int] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    shift_code: Optional[str] = Field(None, pattern=r"^(A|B|C)$")
    status: Optional[str] = Field(None, pattern=r"^(SCHEDULED|UPDATED|CANCELED)$")
    notes: Optional[str] = Field(None, max_length=255)


# ============== Endpoints ==============

@router.get("")
def list_shifts(
    staff_id: Optional[int] = Query(None),
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    auth: dict = Depends(require_admin),
):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_clauses = []
        params = []
        if staff_id:
            where_clauses.append("es.staff_id = %s")
            params.append(staff_id)
        if date_from:
            where_clauses.append("es.starts_at >= %s")
            params.append(date_from)
        if date_to:
            where_clauses.append("es.ends_at <= %s")
            params.append(date_to)
        where_sql = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""

        cursor.execute(
            f"""
            SELECT es.id, es.staff_id, s.name as staff_name, es.shift_code,
                   es.starts_at, es.ends_at, es.status, es.notes
            FROM employee_shifts es
            JOIN staff s ON s.id = es.staff_id
            {where_sql}
            ORDER BY es.starts_at
            """,
            params,
        )
        return {"success": True, "data": cursor.fetchall()}

    except Exception as e:
        logger.error(f"Error listing shifts: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_SHIFTS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_shift(request: ShiftCreateRequest, auth: dict = Depends(require_admin)):
    if request.ends_at <= request.starts_at:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "INVALID_TIME_RANGE", "message": "ends_at must be after starts_at"},
        )

    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT id FROM staff WHERE id = %s", (request.staff_id,))
        if not cursor.fetchone():
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "STAFF_NOT_FOUND", "message": "Staff member not found"},
            )

        cursor.execute(
            """
            INSERT INTO employee_shifts (staff_id, starts_at, ends_at, shift_code, notes)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (request.staff_id, request.starts_at, request.ends_at, request.shift_code, request.notes),
        )
        shift_id = cursor.lastrowid
        log_audit(conn, auth["staff_id"], "SHIFT_CREATED", "employee_shift", shift_id,
                  new_value=request.model_dump())
        conn.commit()

        return {
            "success": True,
            "message": "Shift created",
            "data": {"id": shift_id, "status": "SCHEDULED", **request.model_dump()},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating shift: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_SHIFT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.patch("/{shift_id}")
def update_shift(shift_id: int, request: ShiftUpdateRequest, auth: dict = Depends(require_admin)):
    """Edits mark the shift UPDATED unless a status is given explicitly"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "SELECT id, staff_id, starts_at, ends_at, shift_code, status, notes FROM employee_shifts WHERE id = %s FOR UPDATE",
            (shift_id,),
        )
        shift = cursor.fetchone()
        if not shift:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "SHIFT_NOT_FOUND", "message": "Shift not found"},
            )

        changes = request.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "NO_CHANGES", "message": "Nothing to update"},
            )

        starts_at = changes.get("starts_at", shift["starts_at"])
        ends_at = changes.get("ends_at", shift["ends_at"])
        if ends_at <= starts_at:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "INVALID_TIME_RANGE", "message": "ends_at must be after starts_at"},
            )
        changes.setdefault("status", "UPDATED")

        assignments = ", ".join(f"{column} = %s" for column in changes)
        cursor.execute(
            f"UPDATE employee_shifts SET {assignments} WHERE id = %s",
            list(changes.values()) + [shift_id],
        )
        log_audit(conn, auth["staff_id"], "SHIFT_UPDATED", "employee_shift", shift_id,
                  old_value={column: shift[column] for column in changes},
                  new_value=changes)
        conn.commit()

        return {"success": True, "message": "Shift updated", "data": {"id": shift_id, **changes}}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error updating shift {shift_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "UPDATE_SHIFT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
