"""
Upgrades Router - Move a waitlisted customer into the room offered to them

fulfill prices the upgrade and opens a payment intent; complete swaps the
rooms once that intent is paid. The checkout time never changes.
"""
import json
import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, status, Depends
from pydantic import BaseModel

from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.helpers import to_money
from app.utils.inventory import get_room_tier
from app.utils.occupancy import add_charge, occupy_resources, release_block_resources, release_hold
from app.utils.pricing import GYM_LOCKER, LOCKER, get_upgrade_fee
from app.utils.room_status import CLEAN

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upgrades", tags=["Upgrades"])

UPGRADE_DISCLAIMER_TEXT = (
    "Upgrade availability and time estimates are not guarantees.\n\n"
    "Upgrade fees are charged only if an upgrade becomes available and you choose to accept it.\n\n"
    "Upgrades do not extend your stay. Your checkout time remains the same as your original 6-hour check-in.\n\n"
    "The full upgrade fee applies even if limited time remains."
)


# ============== Request Models ==============

class UpgradeFulfillRequest(BaseModel):
    waitlist_id: int
    room_id: int
    acknowledged_disclaimer: bool = False


class UpgradeCompleteRequest(BaseModel):
    waitlist_id: int
    payment_intent_id: int


# ============== Helpers ==============

def _load_offered_entry(cursor, waitlist_id: int) -> dict:
    cursor.execute(
        """
        SELECT w.*, v.customer_id, cb.rental_type, cb.room_id as block_room_id,
               cb.locker_id as block_locker_id, cb.ends_at as block_ends_at
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
    if entry["status"] != "OFFERED":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "WAITLIST_NOT_OFFERED",
                "message": f"Waitlist entry must be OFFERED (current: {entry['status']})",
            },
        )
    return entry


def _fee_tier(rental_type: str) -> str:
    return LOCKER if rental_type == GYM_LOCKER else rental_type


# ============== Endpoints ==============

@router.get("/disclaimer")
def get_disclaimer():
    """Text the customer must acknowledge before an upgrade"""
    return {"success": True, "data": {"text": UPGRADE_DISCLAIMER_TEXT}}


@router.post("/fulfill")
def fulfill_upgrade(request: UpgradeFulfillRequest, auth: dict = Depends(verify_bearer_token)):
    """Price the upgrade into the offered room and open a payment intent for it"""
    if not request.acknowledged_disclaimer:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "DISCLAIMER_REQUIRED", "message": "Upgrade disclaimer must be acknowledged"},
        )

    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        entry = _load_offered_entry(cursor, request.waitlist_id)

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
                detail={"error_code": "ROOM_ALREADY_ASSIGNED", "message": f"Room {room['number']} is already assigned"},
            )

        tier = get_room_tier(room["number"])
        if tier != entry["desired_tier"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "TIER_MISMATCH",
                    "message": f"Room {room['number']} is {tier}, but desired tier is {entry['desired_tier']}",
                },
            )

        cursor.execute(
            """
            SELECT id FROM inventory_reservations
            WHERE resource_type = 'room' AND resource_id = %s AND kind = 'UPGRADE_HOLD'
              AND released_at IS NULL AND waitlist_id <> %s
            LIMIT 1
            """,
            (request.room_id, request.waitlist_id),
        )
        if cursor.fetchone():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "ROOM_RESERVED", "message": f"Room {room['number']} is held for another customer"},
            )

        fee = get_upgrade_fee(_fee_tier(entry["rental_type"]), tier)
        if fee is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "NOT_AN_UPGRADE",
                    "message": f"{entry['rental_type']} to {tier} is not an upgrade",
                },
            )

        quote = {
            "type": "UPGRADE",
            "from_tier": entry["rental_type"],
            "to_tier": tier,
            "amount": fee,
            "waitlist_id": request.waitlist_id,
            "new_room_id": room["id"],
            "new_room_number": room["number"],
        }
        cursor.execute(
            "INSERT INTO payment_intents (amount, status, quote_json) VALUES (%s, 'DUE', %s)",
            (fee, json.dumps(quote)),
        )
        intent_id = cursor.lastrowid

        log_audit(conn, auth["staff_id"], "UPGRADE_STARTED", "waitlist", request.waitlist_id,
                  old_value={
                      "status": entry["status"],
                      "current_rental_type": entry["rental_type"],
                      "current_resource_id": entry["block_room_id"] or entry["block_locker_id"],
                  },
                  new_value={**quote, "payment_intent_id": intent_id, "disclaimer_acknowledged": True})
        conn.commit()

        return {
            "success": True,
            "message": "Upgrade started",
            "data": {
                "waitlist_id": request.waitlist_id,
                "payment_intent_id": intent_id,
                "upgrade_fee": float(fee),
                "new_room_id": room["id"],
                "new_room_number": room["number"],
                "new_room_tier": tier,
                "from_tier": entry["rental_type"],
            },
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error fulfilling upgrade for waitlist {request.waitlist_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "FULFILL_UPGRADE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/complete")
def complete_upgrade(request: UpgradeCompleteRequest, auth: dict = Depends(verify_bearer_token)):
    """Swap the customer into the upgraded room once the fee is paid"""
    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "SELECT id, amount, status, quote_json FROM payment_intents WHERE id = %s FOR UPDATE",
            (request.payment_intent_id,),
        )
        intent = cursor.fetchone()
        if not intent:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "PAYMENT_INTENT_NOT_FOUND", "message": "Payment intent not found"},
            )
        if intent["status"] != "PAID":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "PAYMENT_REQUIRED", "message": "Upgrade fee must be paid first"},
            )

        quote = intent["quote_json"]
        if isinstance(quote, str):
            quote = json.loads(quote)
        quote = quote or {}
        if quote.get("type") != "UPGRADE" or quote.get("waitlist_id") != request.waitlist_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "INTENT_MISMATCH", "message": "Payment intent is not for this upgrade"},
            )

        entry = _load_offered_entry(cursor, request.waitlist_id)

        cursor.execute(
            "SELECT id, number, assigned_to_customer_id FROM rooms WHERE id = %s FOR UPDATE",
            (quote["new_room_id"],),
        )
        new_room = cursor.fetchone()
        if not new_room:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "ROOM_NOT_FOUND", "message": "New room not found"},
            )
        if new_room["assigned_to_customer_id"]:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "ROOM_ALREADY_ASSIGNED", "message": f"Room {new_room['number']} is already assigned"},
            )

        now = datetime.now()
        old_block = {
            "room_id": entry["block_room_id"],
            "locker_id": entry["block_locker_id"],
        }
        emitted = release_block_resources(cursor, old_block, now)
        occupy_resources(cursor, entry["customer_id"], new_room["id"], None, now)

        # renewals after the waitlisted block sit on the same unit and move with it
        cursor.execute(
            """
            UPDATE checkin_blocks
            SET room_id = %s, locker_id = NULL, rental_type = %s
            WHERE visit_id = %s AND (id = %s OR ends_at > %s)
            """,
            (new_room["id"], entry["desired_tier"], entry["visit_id"], entry["checkin_block_id"], now),
        )
        blocks_moved = cursor.rowcount
        cursor.execute(
            """
            UPDATE waitlist
            SET status = 'COMPLETED', completed_at = %s, offer_expires_at = NULL
            WHERE id = %s
            """,
            (now, request.waitlist_id),
        )
        release_hold(cursor, request.waitlist_id, "COMPLETED", now)
        add_charge(
            cursor, entry["visit_id"], entry["checkin_block_id"], "UPGRADE", intent["amount"],
            f"Upgrade {entry['rental_type']} to {entry['desired_tier']}", intent["id"],
        )

        log_audit(conn, auth["staff_id"], "UPGRADE_COMPLETED", "waitlist", request.waitlist_id,
                  old_value={
                      "room_id": entry["block_room_id"],
                      "locker_id": entry["block_locker_id"],
                      "rental_type": entry["rental_type"],
                  },
                  new_value={
                      "room_id": new_room["id"],
                      "room_number": new_room["number"],
                      "rental_type": entry["desired_tier"],
                      "payment_intent_id": intent["id"],
                      "block_ends_at": entry["block_ends_at"],
                      "blocks_moved": blocks_moved,
                  })
        conn.commit()

        data = {
            "waitlist_id": request.waitlist_id,
            "old_room_id": entry["block_room_id"],
            "old_locker_id": entry["block_locker_id"],
            "new_room_id": new_room["id"],
            "new_room_number": new_room["number"],
            "new_rental_type": entry["desired_tier"],
            "block_ends_at": entry["block_ends_at"],
            "amount": to_money(intent["amount"]),
            "blocks_moved": blocks_moved,
        }
        emitted.extend([
            (events.ROOM_ASSIGNED, {
                "room_id": new_room["id"],
                "room_number": new_room["number"],
                "customer_id": entry["customer_id"],
            }),
            (events.WAITLIST_UPDATED, {"waitlist_id": request.waitlist_id, "status": "COMPLETED"}),
            (events.INVENTORY_UPDATED, {"reason": "UPGRADE"}),
        ])
        publish(emitted)

        return {"success": True, "message": "Upgrade completed", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error completing upgrade for waitlist {request.waitlist_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "COMPLETE_UPGRADE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
