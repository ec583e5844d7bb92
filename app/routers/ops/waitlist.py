"""
Waitlist Router - Upgrade requests and timed holds on specific rooms
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.config import OFFER_HOLD_MINUTES
from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.helpers import paginate
from app.utils.occupancy import release_hold
from app.utils.room_status import CLEAN

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["Waitlist"])

OPEN_STATUSES = ("ACTIVE", "OFFERED")


# ============== Request Models ==============

class OfferRequest(BaseModel):
    room_id: int


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=50)


# ============== Helpers ==============

def _load_entry(cursor, waitlist_id: int) -> dict:
    cursor.execute(
        """
        SELECT w.*, v.ended_at as visit_ended_at, cb.ends_at as block_ends_at,
               v.customer_id
        FROM waitlist w
        JOIN visits v ON w.visit_id = v.id
        JOIN checkin_blocks cb ON w.checkin_block_id = cb.id
        WHERE w.id = %s
        FOR UPDATE
        """,
        (waitlist_id,),
    )
    entry = cursor.fetchone()
    if not entry:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "WAITLIST_NOT_FOUND", "message": "Waitlist entry not found"},
        )
    return entry


def _conflict(error_code: str, message: str):
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error_code": error_code, "message": message},
    )


# ============== Endpoints ==============

@router.get("")
def list_waitlist(
    entry_status: Optional[str] = Query(None, alias="status", pattern=r"^(ACTIVE|OFFERED|COMPLETED|CANCELLED|EXPIRED)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    auth: dict = Depends(verify_bearer_token),
):
    """Waitlist entries with customer, current unit and hold details"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        if entry_status:
            where_sql = "WHERE w.status = %s"
            params = [entry_status]
        else:
            where_sql = "WHERE w.status IN ('ACTIVE', 'OFFERED')"
            params = []

        cursor.execute(f"SELECT COUNT(*) as total FROM waitlist w {where_sql}", params)
        total = cursor.fetchone()["total"]

        offset = (page - 1) * limit
        cursor.execute(
            f"""
            SELECT w.id, w.visit_id, w.checkin_block_id, w.desired_tier, w.backup_tier, w.status,
                   w.room_id as offered_room_id, ro.number as offered_room_number,
                   w.offered_at, w.offer_expires_at, w.last_offered_at, w.offer_attempts,
                   w.cancel_reason, w.created_at,
                   c.id as customer_id, c.name as customer_name, c.membership_number,
                   cb.rental_type as current_rental_type, cb.ends_at as block_ends_at,
                   r.number as current_room_number, l.number as current_locker_number,
                   ir.expires_at as hold_expires_at
            FROM waitlist w
            JOIN visits v ON w.visit_id = v.id
            JOIN customers c ON v.customer_id = c.id
            JOIN checkin_blocks cb ON w.checkin_block_id = cb.id
            LEFT JOIN rooms r ON cb.room_id = r.id
            LEFT JOIN lockers l ON cb.locker_id = l.id
            LEFT JOIN rooms ro ON w.room_id = ro.id
            LEFT JOIN inventory_reservations ir
                ON ir.waitlist_id = w.id AND ir.kind = 'UPGRADE_HOLD' AND ir.released_at IS NULL
            {where_sql}
            ORDER BY w.created_at
            LIMIT %s OFFSET %s
            """,
            params + [limit, offset],
        )
        entries = cursor.fetchall()

        return {
            "success": True,
            "data": entries,
            "pagination": paginate(page, limit, total),
        }

    except Exception as e:
        logger.error(f"Error listing waitlist: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_WAITLIST_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{waitlist_id}/offer")
def offer_room(waitlist_id: int, request: OfferRequest, auth: dict = Depends(verify_bearer_token)):
    """
    Put a specific room on hold for a waitlist entry.
    Re-offering the same room extends the hold; it never shortens it.
    """
    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        entry = _load_entry(cursor, waitlist_id)
        now = datetime.now()

        if entry["status"] not in OPEN_STATUSES:
            raise _conflict("WAITLIST_NOT_OPEN", f"Waitlist entry is {entry['status']}")
        if entry["status"] == "OFFERED" and entry["room_id"] and entry["room_id"] != request.room_id:
            raise _conflict("ALREADY_OFFERED", "Entry already holds a different room")
        if entry["visit_ended_at"] is not None or entry["block_ends_at"] <= now:
            raise _conflict("VISIT_ENDED", "The customer's stay has ended")

        cursor.execute(
            "SELECT id, number, type, status, assigned_to_customer_id FROM rooms WHERE id = %s FOR UPDATE",
            (request.room_id,),
        )
        room = cursor.fetchone()
        if not room:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "ROOM_NOT_FOUND", "message": "Room not found"},
            )
        if room["status"] != CLEAN:
            raise _conflict("ROOM_NOT_CLEAN", f"Room {room['number']} is {room['status']}")
        if room["assigned_to_customer_id"]:
            raise _conflict("ROOM_ALREADY_ASSIGNED", f"Room {room['number']} is assigned")

        cursor.execute(
            """
            SELECT id, waitlist_id, expires_at FROM inventory_reservations
            WHERE resource_type = 'room' AND resource_id = %s
              AND kind = 'UPGRADE_HOLD' AND released_at IS NULL
            FOR UPDATE
            """,
            (request.room_id,),
        )
        reservations = cursor.fetchall()
        own_hold = None
        for reservation in reservations:
            if reservation["waitlist_id"] == waitlist_id:
                own_hold = reservation
            else:
                raise _conflict("ROOM_RESERVED", f"Room {room['number']} is held for another entry")

        cursor.execute(
            "SELECT id FROM waitlist WHERE room_id = %s AND status = 'OFFERED' AND id <> %s LIMIT 1",
            (request.room_id, waitlist_id),
        )
        if cursor.fetchone():
            raise _conflict("ROOM_OFFERED", f"Room {room['number']} is offered to another entry")

        if room["type"] != entry["desired_tier"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "TIER_MISMATCH",
                    "message": f"Room {room['number']} is {room['type']}, entry wants {entry['desired_tier']}",
                },
            )

        expires_at = now + timedelta(minutes=OFFER_HOLD_MINUTES)
        for current in (entry["offer_expires_at"], own_hold["expires_at"] if own_hold else None):
            if current and current > expires_at:
                expires_at = current

        if own_hold:
            cursor.execute(
                "UPDATE inventory_reservations SET expires_at = %s WHERE id = %s",
                (expires_at, own_hold["id"]),
            )
        else:
            cursor.execute(
                """
                INSERT INTO inventory_reservations (resource_type, resource_id, kind, waitlist_id, expires_at)
                VALUES ('room', %s, 'UPGRADE_HOLD', %s, %s)
                """,
                (request.room_id, waitlist_id, expires_at),
            )

        attempts = entry["offer_attempts"] + (1 if entry["status"] == "ACTIVE" else 0)
        cursor.execute(
            """
            UPDATE waitlist
            SET status = 'OFFERED', room_id = %s, offered_at = %s, offer_expires_at = %s,
                last_offered_at = %s, offer_attempts = %s
            WHERE id = %s
            """,
            (request.room_id, now, expires_at, now, attempts, waitlist_id),
        )
        log_audit(conn, auth["staff_id"], "WAITLIST_OFFERED", "waitlist", waitlist_id,
                  old_value={"status": entry["status"], "room_id": entry["room_id"]},
                  new_value={"status": "OFFERED", "room_id": request.room_id, "expires_at": expires_at})
        conn.commit()

        data = {
            "waitlist_id": waitlist_id,
            "status": "OFFERED",
            "room_id": request.room_id,
            "room_number": room["number"],
            "offer_expires_at": expires_at,
            "offer_attempts": attempts,
        }
        publish([(events.WAITLIST_UPDATED, data)])

        return {"success": True, "message": "Room offered", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error offering room for waitlist {waitlist_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "OFFER_WAITLIST_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{waitlist_id}/cancel")
def cancel_waitlist(waitlist_id: int, request: CancelRequest, auth: dict = Depends(verify_bearer_token)):
    """Cancel an open waitlist entry and release any hold"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        entry = _load_entry(cursor, waitlist_id)
        if entry["status"] not in OPEN_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "WAITLIST_NOT_OPEN", "message": f"Waitlist entry is {entry['status']}"},
            )

        now = datetime.now()
        reason = request.reason or "STAFF_CANCELLED"
        cursor.execute(
            """
            UPDATE waitlist
            SET status = 'CANCELLED', cancelled_at = %s, cancelled_by_staff_id = %s,
                cancel_reason = %s, room_id = NULL, offer_expires_at = NULL
            WHERE id = %s
            """,
            (now, auth["staff_id"], reason, waitlist_id),
        )
        release_hold(cursor, waitlist_id, "CANCELLED", now)
        log_audit(conn, auth["staff_id"], "WAITLIST_CANCELLED", "waitlist", waitlist_id,
                  old_value={"status": entry["status"], "room_id": entry["room_id"]},
                  new_value={"status": "CANCELLED", "reason": reason})
        conn.commit()

        data = {"waitlist_id": waitlist_id, "status": "CANCELLED", "reason": reason}
        publish([
            (events.WAITLIST_UPDATED, data),
            (events.INVENTORY_UPDATED, {"reason": "WAITLIST_CANCELLED"}),
        ])

        return {"success": True, "message": "Waitlist entry cancelled", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error cancelling waitlist {waitlist_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CANCEL_WAITLIST_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
