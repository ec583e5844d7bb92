"""
Customers Router - Front desk customer lookup and account maintenance
"""
import logging
from datetime import datetime, date
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.utils.audit import log_audit
from app.utils.helpers import paginate, to_money
from app.utils.late_fees import strip_late_fee_notes, LATE_FEE_NOTE_PREFIX

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/customers", tags=["Customers"])


# ============== Request Models ==============

class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    dob: Optional[date] = None
    membership_number: Optional[str] = Field(None, max_length=50)
    membership_card_type: str = Field("NONE", pattern=r"^(NONE|SIX_MONTH)$")
    membership_valid_until: Optional[date] = None


class NotesUpdate(BaseModel):
    notes: Optional[str] = Field(None, max_length=5000)
    clear_late_fee_notes: bool = False


class PastDueClear(BaseModel):
    amount_paid: float = Field(..., ge=0)
    payment_method: str = Field("CASH", pattern=r"^(CASH|CREDIT)$")


# ============== Helpers ==============

def ban_remaining_days(banned_until: Optional[datetime], now: datetime) -> int:
    if not banned_until or banned_until <= now:
        return 0
    seconds = (banned_until - now).total_seconds()
    return int(-(-seconds // 86400))


def _serialize(customer: dict, now: datetime) -> dict:
    customer["past_due_balance"] = to_money(customer.get("past_due_balance"))
    customer["is_banned"] = bool(customer.get("banned_until") and customer["banned_until"] > now)
    customer["ban_remaining_days"] = ban_remaining_days(customer.get("banned_until"), now)
    return customer


# ============== Endpoints ==============

@router.get("")
def list_customers(
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    auth: dict = Depends(verify_bearer_token),
):
    """Search customers by name or membership number"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_sql = ""
        params = []
        if search:
            where_sql = " WHERE c.name LIKE %s OR c.membership_number LIKE %s"
            term = f"%{search}%"
            params.extend([term, term])

        cursor.execute(f"SELECT COUNT(*) as total FROM customers c{where_sql}", params)
        total = cursor.fetchone()["total"]

        offset = (page - 1) * limit
        cursor.execute(
            f"""
            SELECT c.id, c.name, c.dob, c.membership_number, c.membership_card_type,
                   c.membership_valid_until, c.banned_until, c.past_due_balance
            FROM customers c
            {where_sql}
            ORDER BY c.name ASC
            LIMIT %s OFFSET %s
            """,
            params + [limit, offset],
        )
        now = datetime.now()
        customers = [_serialize(row, now) for row in cursor.fetchall()]

        return {
            "success": True,
            "data": customers,
            "pagination": paginate(page, limit, total),
        }

    except Exception as e:
        logger.error(f"Error listing customers: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_CUSTOMERS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/{customer_id}")
def get_customer(customer_id: int, auth: dict = Depends(verify_bearer_token)):
    """Customer detail with the open visit, if any"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT * FROM customers WHERE id = %s", (customer_id,))
        customer = cursor.fetchone()
        if not customer:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
            )

        cursor.execute(
            """
            SELECT v.id, v.started_at,
                   (SELECT MAX(cb.ends_at) FROM checkin_blocks cb WHERE cb.visit_id = v.id) as ends_at
            FROM visits v
            WHERE v.customer_id = %s AND v.ended_at IS NULL
            ORDER BY v.started_at DESC
            LIMIT 1
            """,
            (customer_id,),
        )
        customer["active_visit"] = cursor.fetchone()

        return {"success": True, "data": _serialize(customer, datetime.now())}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting customer {customer_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_CUSTOMER_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_customer(request: CustomerCreate, auth: dict = Depends(verify_bearer_token)):
    """Register a customer"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        if request.membership_number:
            cursor.execute(
                "SELECT id FROM customers WHERE membership_number = %s",
                (request.membership_number,),
            )
            if cursor.fetchone():
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail={
                        "error_code": "MEMBERSHIP_NUMBER_EXISTS",
                        "message": "Membership number already registered",
                    },
                )

        cursor.execute(
            """
            INSERT INTO customers (name, dob, membership_number, membership_card_type, membership_valid_until)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                request.name,
                request.dob,
                request.membership_number,
                request.membership_card_type,
                request.membership_valid_until,
            ),
        )
        customer_id = cursor.lastrowid

        log_audit(conn, auth["staff_id"], "CUSTOMER_CREATED", "customer", customer_id,
                  new_value=request.model_dump())
        conn.commit()

        return {
            "success": True,
            "message": "Customer created",
            "data": {"id": customer_id},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating customer: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_CUSTOMER_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.patch("/{customer_id}/notes")
def update_notes(customer_id: int, request: NotesUpdate, auth: dict = Depends(verify_bearer_token)):
    """
    Replace the staff-written notes. System late-fee lines are kept unless
    clear_late_fee_notes is set.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT id, notes FROM customers WHERE id = %s FOR UPDATE", (customer_id,))
        customer = cursor.fetchone()
        if not customer:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
            )

        staff_notes = strip_late_fee_notes(request.notes)
        system_lines = []
        if not request.clear_late_fee_notes and customer["notes"]:
            system_lines = [
                line for line in customer["notes"].split("\n")
                if line.startswith(LATE_FEE_NOTE_PREFIX)
            ]

        parts = ([staff_notes] if staff_notes else []) + system_lines
        new_notes = "\n".join(parts) or None

        cursor.execute("UPDATE customers SET notes = %s WHERE id = %s", (new_notes, customer_id))
        log_audit(conn, auth["staff_id"], "CUSTOMER_NOTES_UPDATED", "customer", customer_id,
                  old_value={"notes": customer["notes"]}, new_value={"notes": new_notes})
        conn.commit()

        return {"success": True, "message": "Notes updated", "data": {"notes": new_notes}}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error updating notes for customer {customer_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "UPDATE_NOTES_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{customer_id}/past-due/clear")
def clear_past_due(customer_id: int, request: PastDueClear, auth: dict = Depends(verify_bearer_token)):
    """Record a past-due payment; a full payment also drops pending late-fee notes"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "SELECT id, past_due_balance, notes FROM customers WHERE id = %s FOR UPDATE",
            (customer_id,),
        )
        customer = cursor.fetchone()
        if not customer:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
            )

        balance = to_money(customer["past_due_balance"])
        if balance <= 0:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "NO_PAST_DUE", "message": "Customer has no past-due balance"},
            )

        remaining = max(0.0, round(balance - request.amount_paid, 2))
        notes = customer["notes"] if remaining > 0 else strip_late_fee_notes(customer["notes"])

        cursor.execute(
            "UPDATE customers SET past_due_balance = %s, notes = %s WHERE id = %s",
            (remaining, notes, customer_id),
        )
        log_audit(conn, auth["staff_id"], "PAST_DUE_CLEARED", "customer", customer_id,
                  old_value={"past_due_balance": balance},
                  new_value={
                      "past_due_balance": remaining,
                      "amount_paid": request.amount_paid,
                      "payment_method": request.payment_method,
                  })
        conn.commit()

        return {
            "success": True,
            "message": "Past-due payment recorded",
            "data": {"past_due_balance": remaining},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error clearing past due for customer {customer_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CLEAR_PAST_DUE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
