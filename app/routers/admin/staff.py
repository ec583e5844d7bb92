import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import require_admin
from app.utils.audit import log_audit
from app.utils.helpers import generate_pin, hash_pin, paginate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/staff", tags=["Admin - Staff"])


# ============== Request Models ==============

class StaffCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    role: str = Field("STAFF", pattern=r"^(STAFF|ADMIN)$")
    pin: Optional[str] = Field(None, pattern=r"^\d{4,12}$")
    active: bool = True


class StaffUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    role: Optional[str] = Field(None, pattern=r"^(STAFF|ADMIN)$")
    active: Optional[bool] = None


class ResetPinRequest(BaseModel):
    pin: Optional[str] = Field(None, pattern=r"^\d{4,12}$")


# ============== Endpoints ==============

@router.get("")
def list_staff(
    search: Optional[str] = Query(None),
    active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: dict = Depends(require_admin),
):
    """
    List staff members with pagination and filters.
    Requires: ADMIN
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_clauses = []
        params = []
        if search:
            where_clauses.append("name LIKE %s")
            params.append(f"%{search}%")
        if active is not None:
            where_clauses.append("active = %s")
            params.append(1 if active else 0)
        where_sql = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""

        cursor.execute(f"SELECT COUNT(*) as total FROM staff{where_sql}", params)
        total = cursor.fetchone()["total"]

        offset = (page - 1) * limit
        cursor.execute(
            f"""
            SELECT id, name, role, active, locked_until, created_at
            FROM staff{where_sql}
            ORDER BY name
            LIMIT %s OFFSET %s
            """,
            params + [limit, offset],
        )
        rows = cursor.fetchall()
        for row in rows:
            row["active"] = bool(row["active"])

        return {"success": True, "data": rows, "pagination": paginate(page, limit, total)}

    except Exception as e:
        logger.error(f"Error listing staff: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_STAFF_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_staff(request: StaffCreateRequest, auth: dict = Depends(require_admin)):
    """
    Create a staff member. A PIN is generated when none is given and is
    returned once in the response.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        pin = request.pin or generate_pin()
        cursor.execute(
            "INSERT INTO staff (name, role, pin_hash, active) VALUES (%s, %s, %s, %s)",
            (request.name, request.role, hash_pin(pin), 1 if request.active else 0),
        )
        staff_id = cursor.lastrowid
        log_audit(conn, auth["staff_id"], "STAFF_CREATED", "staff", staff_id,
                  new_value={"name": request.name, "role": request.role, "active": request.active})
        conn.commit()

        data = {"id": staff_id, "name": request.name, "role": request.role, "active": request.active}
        if not request.pin:
            data["pin"] = pin

        return {"success": True, "message": "Staff member created", "data": data}

    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating staff: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_STAFF_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.patch("/{staff_id}")
def update_staff(staff_id: int, request: StaffUpdateRequest, auth: dict = Depends(require_admin)):
    """Deactivating or changing role revokes the member's existing tokens"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT id, name, role, active FROM staff WHERE id = %s FOR UPDATE", (staff_id,))
        member = cursor.fetchone()
        if not member:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "STAFF_NOT_FOUND", "message": "Staff member not found"},
            )

        if staff_id == auth["staff_id"] and request.active is False:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "CANNOT_DEACTIVATE_SELF", "message": "You cannot deactivate yourself"},
            )

        update_fields = []
        params = []
        changes = {}
        if request.name is not None:
            update_fields.append("name = %s")
            params.append(request.name)
            changes["name"] = request.name
        if request.role is not None:
            update_fields.append("role = %s")
            params.append(request.role)
            changes["role"] = request.role
        if request.active is not None:
            update_fields.append("active = %s")
            params.append(1 if request.active else 0)
            changes["active"] = request.active

        if not update_fields:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "NO_CHANGES", "message": "Nothing to update"},
            )

        revoke = request.active is False or (request.role is not None and request.role != member["role"])
        if revoke:
            update_fields.append("token_version = token_version + 1")

        cursor.execute(
            f"UPDATE staff SET {', '.join(update_fields)} WHERE id = %s",
            params + [staff_id],
        )
        log_audit(conn, auth["staff_id"], "STAFF_UPDATED", "staff", staff_id,
                  old_value={"name": member["name"], "role": member["role"], "active": bool(member["active"])},
                  new_value=changes)
        conn.commit()

        return {"success": True, "message": "Staff member updated", "data": {"id": staff_id, **changes}}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error updating staff {staff_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "UPDATE_STAFF_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{staff_id}/reset-pin")
def reset_staff_pin(staff_id: int, request: ResetPinRequest, auth: dict = Depends(require_admin)):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT id FROM staff WHERE id = %s", (staff_id,))
        if not cursor.fetchone():
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "STAFF_NOT_FOUND", "message": "Staff member not found"},
            )

        pin = request.pin or generate_pin()
        cursor.execute(
            """
            UPDATE staff
            SET pin_hash = %s, failed_login_attempts = 0, locked_until = NULL,
                token_version = token_version + 1, updated_at = %s
            WHERE id = %s
            """,
            (hash_pin(pin), datetime.now(), staff_id),
        )
        log_audit(conn, auth["staff_id"], "STAFF_PIN_RESET", "staff", staff_id)
        conn.commit()

        data = {"id": staff_id}
        if not request.pin:
            data["pin"] = pin

        return {"success": True, "message": "PIN reset", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error resetting PIN for staff {staff_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "RESET_PIN_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
