"""
Visits Router - Occupancy records: open, renew, final extension
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.routers.ops.customers import ban_remaining_days
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.helpers import to_money
from app.utils.inventory import get_room_tier
from app.utils.late_fees import checkout_delta
from app.utils.occupancy import (
    add_block,
    add_charge,
    lock_locker_for_assignment,
    lock_room_for_assignment,
    occupy_resources,
    open_visit,
    visit_blocks,
)
from app.utils.pricing import LOCKER, GYM_LOCKER
from app.utils.stays import (
    FINAL2H,
    FINAL_EXTENSION_PRICE,
    MAX_STAY_HOURS,
    RENEWAL,
    can_final_extend,
    can_renew,
    total_hours,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/visits", tags=["Visits"])


# ============== Request Models ==============

class VisitCreate(BaseModel):
    customer_id: int
    rental_type: str = Field(..., pattern=r"^(LOCKER|STANDARD|DOUBLE|SPECIAL|GYM_LOCKER)$")
    room_id: Optional[int] = None
    locker_id: Optional[int] = None


class VisitRenew(BaseModel):
    hours: int = Field(6, description="6 for a renewal block, 2 for the final extension")


# ============== Helpers ==============

def fetch_open_visit(cursor, visit_id: int) -> dict:
    cursor.execute(
        "SELECT id, customer_id, started_at, ended_at FROM visits WHERE id = %s FOR UPDATE",
        (visit_id,),
    )
    visit = cursor.fetchone()
    if not visit:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "VISIT_NOT_FOUND", "message": "Visit not found"},
        )
    if visit["ended_at"]:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "VISIT_ENDED", "message": "Visit has already ended"},
        )
    return visit


def check_customer_can_check_in(cursor, customer_id: int, now: datetime) -> dict:
    cursor.execute("SELECT * FROM customers WHERE id = %s", (customer_id,))
    customer = cursor.fetchone()
    if not customer:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
        )

    if customer["banned_until"] and customer["banned_until"] > now:
        days = ban_remaining_days(customer["banned_until"], now)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error_code": "CUSTOMER_BANNED",
                "message": f"Customer is banned for {days} more day(s)",
            },
        )

    cursor.execute(
        "SELECT id FROM visits WHERE customer_id = %s AND ended_at IS NULL LIMIT 1",
        (customer_id,),
    )
    if cursor.fetchone():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "VISIT_ALREADY_OPEN", "message": "Customer already has an active visit"},
        )
    return customer


# ============== Endpoints ==============

@router.post("", status_code=status.HTTP_201_CREATED)
def create_visit(request: VisitCreate, auth: dict = Depends(verify_bearer_token)):
    """Open a visit with a 6 hour INITIAL block on a room or locker"""
    is_locker = request.rental_type in (LOCKER, GYM_LOCKER)
    if (is_locker and not request.locker_id) or (not is_locker and not request.room_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "RESOURCE_REQUIRED",
                "message": "locker_id is required for lockers, room_id for rooms",
            },
        )

    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        now = datetime.now()
        check_customer_can_check_in(cursor, request.customer_id, now)

        room = None
        if request.room_id:
            room = lock_room_for_assignment(cursor, request.room_id)
            if get_room_tier(room["number"]) != request.rental_type:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={
                        "error_code": "TIER_MISMATCH",
                        "message": f"Room {room['number']} is not a {request.rental_type} room",
                    },
                )
        if request.locker_id:
            lock_locker_for_assignment(cursor, request.locker_id)

        visit_id, block = open_visit(
            cursor, request.customer_id, request.rental_type,
            request.room_id, request.locker_id, now,
        )
        occupy_resources(cursor, request.customer_id, request.room_id, request.locker_id, now)

        log_audit(conn, auth["staff_id"], "VISIT_CREATED", "visit", visit_id,
                  new_value={"block": block, "customer_id": request.customer_id})
        conn.commit()

        emitted = [(events.INVENTORY_UPDATED, {"reason": "VISIT_CREATED"})]
        if room:
            emitted.insert(0, (events.ROOM_ASSIGNED, {
                "room_id": room["id"],
                "room_number": room["number"],
                "customer_id": request.customer_id,
            }))
        publish(emitted)

        return {
            "success": True,
            "message": "Visit started",
            "data": {"visit_id": visit_id, "block": block},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating visit: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_VISIT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{visit_id}/renew")
def renew_visit(visit_id: int, request: VisitRenew, auth: dict = Depends(verify_bearer_token)):
    """
    Extend a visit.
    hours=6 appends a RENEWAL block (total stay capped at 14 hours);
    hours=2 is the $20 final extension, sold only after exactly 12 hours.
    """
    if request.hours not in (2, 6):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "INVALID_RENEWAL_HOURS", "message": "hours must be 6 or 2"},
        )

    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        now = datetime.now()
        fetch_open_visit(cursor, visit_id)
        blocks = visit_blocks(cursor, visit_id)
        if not blocks:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "VISIT_HAS_NO_BLOCKS", "message": "Visit has no check-in blocks"},
            )

        current_hours = total_hours(blocks)
        latest = blocks[-1]

        if request.hours == 6:
            if not can_renew(current_hours, 6):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={
                        "error_code": "MAX_STAY_EXCEEDED",
                        "message": f"Renewal would exceed the {MAX_STAY_HOURS} hour maximum stay "
                                   f"(current: {current_hours:g} hours)",
                    },
                )
            block_type = RENEWAL
        else:
            if not can_final_extend(blocks):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={
                        "error_code": "FINAL_EXTENSION_NOT_ALLOWED",
                        "message": "Final 2 hour extension requires exactly 12 hours on the visit",
                    },
                )
            block_type = FINAL2H

        block = add_block(
            cursor, visit_id, blocks, block_type, latest["rental_type"],
            latest["room_id"], latest["locker_id"], now,
        )
        if block_type == FINAL2H:
            add_charge(cursor, visit_id, block["id"], "FINAL_EXTENSION", FINAL_EXTENSION_PRICE,
                       "Final extension (2 Hours)")

        log_audit(conn, auth["staff_id"], "VISIT_RENEWED", "visit", visit_id,
                  old_value={"total_hours": current_hours},
                  new_value={"block": block, "total_hours": current_hours + request.hours})
        conn.commit()

        return {
            "success": True,
            "message": "Visit extended",
            "data": {
                "visit_id": visit_id,
                "block": block,
                "total_hours": current_hours + request.hours,
            },
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error renewing visit {visit_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "RENEW_VISIT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/active")
def list_active_visits(
    search: Optional[str] = Query(None),
    auth: dict = Depends(verify_bearer_token),
):
    """Open visits with the latest block and time to checkout"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        params = []
        search_sql = ""
        if search:
            search_sql = " AND (c.name LIKE %s OR c.membership_number LIKE %s OR r.number = %s OR l.number = %s)"
            term = f"%{search}%"
            params.extend([term, term, search, search])

        cursor.execute(
            f"""
            SELECT v.id as visit_id, v.customer_id, c.name as customer_name, v.started_at,
                   cb.id as occupancy_id, cb.block_type, cb.ends_at, cb.rental_type,
                   r.number as room_number, l.number as locker_number
            FROM visits v
            JOIN customers c ON v.customer_id = c.id
            JOIN checkin_blocks cb ON cb.visit_id = v.id
            LEFT JOIN rooms r ON cb.room_id = r.id
            LEFT JOIN lockers l ON cb.locker_id = l.id
            WHERE v.ended_at IS NULL
              AND cb.ends_at = (SELECT MAX(cb2.ends_at) FROM checkin_blocks cb2 WHERE cb2.visit_id = v.id)
              {search_sql}
            ORDER BY cb.ends_at ASC
            """,
            params,
        )
        now = datetime.now()
        visits = cursor.fetchall()
        for v in visits:
            v["checkout"] = checkout_delta(now, v["ends_at"])

        return {"success": True, "data": visits}

    except Exception as e:
        logger.error(f"Error listing active visits: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_VISITS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/{visit_id}")
def get_visit(visit_id: int, auth: dict = Depends(verify_bearer_token)):
    """Visit detail with blocks and charges"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            """
            SELECT v.*, c.name as customer_name
            FROM visits v JOIN customers c ON v.customer_id = c.id
            WHERE v.id = %s
            """,
            (visit_id,),
        )
        visit = cursor.fetchone()
        if not visit:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "VISIT_NOT_FOUND", "message": "Visit not found"},
            )

        visit["blocks"] = visit_blocks(cursor, visit_id)
        visit["total_hours"] = total_hours(visit["blocks"])
        visit["charges"] = _load_charges(cursor, visit_id)

        return {"success": True, "data": visit}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting visit {visit_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_VISIT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/{visit_id}/charges")
def get_visit_charges(visit_id: int, auth: dict = Depends(verify_bearer_token)):
    """Billing line items recorded against a visit"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        charges = _load_charges(cursor, visit_id)
        return {
            "success": True,
            "data": {
                "charges": charges,
                "total": round(sum(c["amount"] for c in charges), 2),
            },
        }

    except Exception as e:
        logger.error(f"Error loading charges for visit {visit_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_CHARGES_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


def _load_charges(cursor, visit_id: int):
    cursor.execute(
        """
        SELECT id, checkin_block_id, type, description, amount, payment_intent_id, created_at
        FROM charges WHERE visit_id = %s ORDER BY created_at, id
        """,
        (visit_id,),
    )
    charges = cursor.fetchall()
    for c in charges:
        c["amount"] = to_money(c["amount"])
    return charges
