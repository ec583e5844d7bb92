"""
Shared SQL steps for closing occupancies and releasing holds.

Every function works on the caller's cursor inside the caller's transaction
and returns the broadcast events to publish once the caller commits.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from fastapi import HTTPException, status

from app.config import LATE_FEE_BAN_DAYS
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.helpers import to_money
from app.utils.late_fees import (
    LATE_EVENT_THRESHOLD_MINUTES,
    append_note,
    build_late_fee_note,
    calculate_late_fee,
    compute_late_minutes,
)
from app.utils.room_status import CLEAN, DIRTY, OCCUPIED
from app.utils.stays import INITIAL, next_block_window

logger = logging.getLogger(__name__)

BLOCK_SELECT = """
    SELECT cb.id, cb.visit_id, cb.block_type, cb.starts_at, cb.ends_at, cb.rental_type,
           cb.room_id, cb.locker_id, cb.has_tv_remote,
           v.customer_id, v.started_at as visit_started_at, v.ended_at as visit_ended_at,
           c.name as customer_name, c.notes as customer_notes,
           r.number as room_number, l.number as locker_number
    FROM checkin_blocks cb
    JOIN visits v ON cb.visit_id = v.id
    JOIN customers c ON v.customer_id = c.id
    LEFT JOIN rooms r ON cb.room_id = r.id
    LEFT JOIN lockers l ON cb.locker_id = l.id
"""


def fetch_block(cursor, block_id: int, lock: bool = False) -> Optional[dict]:
    cursor.execute(
        BLOCK_SELECT + " WHERE cb.id = %s" + (" FOR UPDATE" if lock else ""),
        (block_id,),
    )
    return cursor.fetchone()


def late_summary(block: dict, now: datetime) -> dict:
    late_minutes = compute_late_minutes(block["ends_at"], now)
    fee, ban = calculate_late_fee(late_minutes)
    return {"late_minutes": late_minutes, "late_fee_amount": fee, "ban_applied": ban}


def release_hold(cursor, waitlist_id: int, reason: str, now: datetime) -> int:
    """Release the active UPGRADE_HOLD reservation of a waitlist entry."""
    cursor.execute(
        """
        UPDATE inventory_reservations
        SET released_at = %s, release_reason = %s
        WHERE waitlist_id = %s AND kind = 'UPGRADE_HOLD' AND released_at IS NULL
        """,
        (now, reason, waitlist_id),
    )
    return cursor.rowcount


def cancel_visit_waitlist(conn, cursor, visit_id: int, staff_id: Optional[int], now: datetime) -> List[tuple]:
    """Checkout cancels every ACTIVE/OFFERED waitlist entry of the visit."""
    cursor.execute(
        """
        SELECT id, status, room_id FROM waitlist
        WHERE visit_id = %s AND status IN ('ACTIVE', 'OFFERED')
        FOR UPDATE
        """,
        (visit_id,),
    )
    entries = cursor.fetchall()

    emitted = []
    for entry in entries:
        cursor.execute(
            """
            UPDATE waitlist
            SET status = 'CANCELLED', cancelled_at = %s, cancelled_by_staff_id = %s,
                cancel_reason = 'CHECKED_OUT', room_id = NULL, offer_expires_at = NULL
            WHERE id = %s
            """,
            (now, staff_id, entry["id"]),
        )
        release_hold(cursor, entry["id"], "CANCELLED", now)
        log_audit(conn, staff_id, "WAITLIST_CANCELLED", "waitlist", entry["id"],
                  old_value={"status": entry["status"], "room_id": entry["room_id"]},
                  new_value={"status": "CANCELLED", "reason": "CHECKED_OUT"})
        emitted.append((events.WAITLIST_UPDATED, {"waitlist_id": entry["id"], "status": "CANCELLED"}))
    return emitted


def release_block_resources(cursor, block: dict, now: datetime) -> List[tuple]:
    """Room goes DIRTY for cleaning; locker goes straight back to CLEAN."""
    emitted = []
    if block.get("room_id"):
        cursor.execute(
            """
            UPDATE rooms
            SET status = %s, assigned_to_customer_id = NULL, last_status_change = %s, override_flag = 0
            WHERE id = %s
            """,
            (DIRTY, now, block["room_id"]),
        )
        emitted.append((events.ROOM_STATUS_CHANGED, {
            "room_id": block["room_id"],
            "room_number": block.get("room_number"),
            "status": DIRTY,
            "override": False,
        }))
        emitted.append((events.ROOM_RELEASED, {"room_id": block["room_id"]}))
    if block.get("locker_id"):
        cursor.execute(
            "UPDATE lockers SET status = %s, assigned_to_customer_id = NULL WHERE id = %s",
            (CLEAN, block["locker_id"]),
        )
    return emitted


def apply_late_fee_bookkeeping(
    cursor,
    block: dict,
    late: dict,
    now: datetime,
    checkout_request_id: Optional[int] = None,
) -> dict:
    """
    Record a late checkout: event row, LATE_FEE charge (once per block),
    past-due balance, customer note and ban.

    `late` is a late_summary(); a kiosk checkout passes the one frozen on
    its request so the customer pays what the kiosk showed.
    """
    late_minutes = int(late["late_minutes"] or 0)
    fee = to_money(late["late_fee_amount"])
    ban = bool(late["ban_applied"])
    if late_minutes < LATE_EVENT_THRESHOLD_MINUTES:
        return {"late_minutes": late_minutes, "late_fee_amount": 0.0, "ban_applied": False}

    cursor.execute(
        """
        INSERT INTO late_checkout_events
            (customer_id, occupancy_id, checkout_request_id, late_minutes, fee_amount, ban_applied)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (block["customer_id"], block["id"], checkout_request_id, late_minutes, fee, ban),
    )

    if ban:
        cursor.execute(
            "UPDATE customers SET banned_until = %s WHERE id = %s",
            (now + timedelta(days=LATE_FEE_BAN_DAYS), block["customer_id"]),
        )

    if fee > 0:
        cursor.execute(
            "SELECT id FROM charges WHERE checkin_block_id = %s AND type = 'LATE_FEE' LIMIT 1",
            (block["id"],),
        )
        if not cursor.fetchone():
            cursor.execute(
                """
                INSERT INTO charges (visit_id, checkin_block_id, type, description, amount)
                VALUES (%s, %s, 'LATE_FEE', %s, %s)
                """,
                (block["visit_id"], block["id"], f"Late checkout ({late_minutes} min)", fee),
            )
            cursor.execute(
                "SELECT notes FROM customers WHERE id = %s FOR UPDATE",
                (block["customer_id"],),
            )
            row = cursor.fetchone() or {}
            note = build_late_fee_note(late_minutes, block["visit_started_at"].date(), fee)
            cursor.execute(
                """
                UPDATE customers
                SET past_due_balance = past_due_balance + %s, notes = %s
                WHERE id = %s
                """,
                (fee, append_note(row.get("notes"), note), block["customer_id"]),
            )

    logger.info(
        "Late checkout for block %s: %s min, fee %.2f, ban=%s",
        block["id"], late_minutes, fee, ban,
    )
    return {"late_minutes": late_minutes, "late_fee_amount": fee, "ban_applied": ban}


def close_occupancy(
    conn,
    cursor,
    block: dict,
    staff_id: Optional[int],
    now: datetime,
    checkout_request_id: Optional[int] = None,
    late: Optional[dict] = None,
) -> Tuple[dict, List[tuple]]:
    """
    End the visit behind a block: cancel its waitlist entries, release the
    room/locker, apply late-fee bookkeeping. Lateness is measured now unless
    a frozen `late` summary is given.
    """
    emitted = cancel_visit_waitlist(conn, cursor, block["visit_id"], staff_id, now)
    emitted.extend(release_block_resources(cursor, block, now))

    cursor.execute("UPDATE visits SET ended_at = %s WHERE id = %s", (now, block["visit_id"]))

    if late is None:
        late = late_summary(block, now)
    summary = apply_late_fee_bookkeeping(cursor, block, late, now, checkout_request_id)

    log_audit(conn, staff_id, "CHECKOUT_COMPLETED", "visit", block["visit_id"],
              new_value={
                  "occupancy_id": block["id"],
                  "room_id": block.get("room_id"),
                  "locker_id": block.get("locker_id"),
                  "checkout_request_id": checkout_request_id,
                  **summary,
              })

    emitted.append((events.INVENTORY_UPDATED, {"reason": "CHECKOUT"}))
    return summary, emitted


def lock_room_for_assignment(cursor, room_id: int) -> dict:
    """Lock a room row and make sure a customer can be put in it."""
    cursor.execute(
        "SELECT id, number, type, status, assigned_to_customer_id FROM rooms WHERE id = %s FOR UPDATE",
        (room_id,),
    )
    room = cursor.fetchone()
    if not room:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "ROOM_NOT_FOUND", "message": "Room not found"},
        )
    if room["status"] != CLEAN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "ROOM_NOT_AVAILABLE",
                "message": f"Room {room['number']} is not available (status: {room['status']})",
            },
        )
    if room["assigned_to_customer_id"]:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error_code": "ROOM_ALREADY_ASSIGNED",
                "message": f"Room {room['number']} is already assigned",
            },
        )
    return room


def lock_locker_for_assignment(cursor, locker_id: int) -> dict:
    cursor.execute(
        "SELECT id, number, status, assigned_to_customer_id FROM lockers WHERE id = %s FOR UPDATE",
        (locker_id,),
    )
    locker = cursor.fetchone()
    if not locker:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "LOCKER_NOT_FOUND", "message": "Locker not found"},
        )
    if locker["assigned_to_customer_id"]:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error_code": "LOCKER_ALREADY_ASSIGNED",
                "message": f"Locker {locker['number']} is already assigned",
            },
        )
    return locker


def occupy_resources(cursor, customer_id: int, room_id: Optional[int], locker_id: Optional[int], now: datetime):
    if room_id:
        cursor.execute(
            """
            UPDATE rooms
            SET status = %s, assigned_to_customer_id = %s, last_status_change = %s, override_flag = 0
            WHERE id = %s
            """,
            (OCCUPIED, customer_id, now, room_id),
        )
    if locker_id:
        cursor.execute(
            "UPDATE lockers SET status = %s, assigned_to_customer_id = %s WHERE id = %s",
            (OCCUPIED, customer_id, locker_id),
        )


def open_visit(
    cursor,
    customer_id: int,
    rental_type: str,
    room_id: Optional[int],
    locker_id: Optional[int],
    now: datetime,
    session_id: Optional[int] = None,
) -> Tuple[int, dict]:
    """Create the visit and its INITIAL block; returns (visit_id, block)."""
    cursor.execute(
        "INSERT INTO visits (customer_id, started_at) VALUES (%s, %s)",
        (customer_id, now),
    )
    visit_id = cursor.lastrowid
    block = add_block(cursor, visit_id, [], INITIAL, rental_type, room_id, locker_id, now, session_id)
    return visit_id, block


def add_block(
    cursor,
    visit_id: int,
    blocks: List[dict],
    block_type: str,
    rental_type: str,
    room_id: Optional[int],
    locker_id: Optional[int],
    now: datetime,
    session_id: Optional[int] = None,
) -> dict:
    starts_at, ends_at = next_block_window(blocks, block_type, now)
    cursor.execute(
        """
        INSERT INTO checkin_blocks
            (visit_id, block_type, starts_at, ends_at, rental_type, room_id, locker_id, session_id)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (visit_id, block_type, starts_at, ends_at, rental_type, room_id, locker_id, session_id),
    )
    return {
        "id": cursor.lastrowid,
        "visit_id": visit_id,
        "block_type": block_type,
        "starts_at": starts_at,
        "ends_at": ends_at,
        "rental_type": rental_type,
        "room_id": room_id,
        "locker_id": locker_id,
    }


def visit_blocks(cursor, visit_id: int) -> List[dict]:
    cursor.execute(
        """
        SELECT id, block_type, starts_at, ends_at, rental_type, room_id, locker_id
        FROM checkin_blocks WHERE visit_id = %s ORDER BY starts_at
        """,
        (visit_id,),
    )
    return cursor.fetchall()


def add_charge(
    cursor,
    visit_id: int,
    block_id: Optional[int],
    charge_type: str,
    amount,
    description: Optional[str] = None,
    payment_intent_id: Optional[int] = None,
) -> int:
    cursor.execute(
        """
        INSERT INTO charges (visit_id, checkin_block_id, type, description, amount, payment_intent_id)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (visit_id, block_id, charge_type, description, amount, payment_intent_id),
    )
    return cursor.lastrowid
