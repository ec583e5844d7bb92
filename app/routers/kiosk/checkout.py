"""
Kiosk Checkout Router - Customer-facing checkout at the exit kiosk

The kiosk scans a key tag, shows the customer their scheduled checkout and
any late fee, then files a checkout request for staff to verify.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.utils import broadcaster as events
from app.utils.broadcaster import publish
from app.utils.late_fees import checkout_delta
from app.utils.occupancy import BLOCK_SELECT, fetch_block, late_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["Kiosk - Checkout"])


# ============== Request Models ==============

class ResolveKeyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=100)


class CheckoutRequestCreate(BaseModel):
    occupancy_id: int
    kiosk_device_id: str = Field(..., min_length=1, max_length=100)
    checklist: dict = Field(default_factory=dict)


# ============== Helpers ==============

def active_block_for_tag(cursor, tag: dict) -> Optional[dict]:
    """Latest block of an open visit holding the tag's room or locker."""
    column = "cb.room_id" if tag["room_id"] else "cb.locker_id"
    cursor.execute(
        BLOCK_SELECT
        + f" WHERE {column} = %s AND v.ended_at IS NULL ORDER BY cb.ends_at DESC LIMIT 1",
        (tag["room_id"] or tag["locker_id"],),
    )
    return cursor.fetchone()


def describe_block(block: dict, now: datetime) -> dict:
    return {
        "occupancy_id": block["id"],
        "visit_id": block["visit_id"],
        "customer_id": block["customer_id"],
        "customer_name": block["customer_name"],
        "rental_type": block["rental_type"],
        "room_number": block.get("room_number"),
        "locker_number": block.get("locker_number"),
        "scheduled_checkout_at": block["ends_at"],
        "delta": checkout_delta(now, block["ends_at"]),
        **late_summary(block, now),
    }


# ============== Endpoints ==============

@router.post("/resolve-key")
def resolve_checkout_key(request: ResolveKeyRequest):
    """Find the stay behind a scanned key tag"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "SELECT id, room_id, locker_id FROM key_tags WHERE tag_code = %s AND is_active = 1",
            (request.token,),
        )
        tag = cursor.fetchone()
        if not tag:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "KEY_NOT_FOUND", "message": "Key tag not found or inactive"},
            )

        block = active_block_for_tag(cursor, tag)
        if not block:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "NO_ACTIVE_OCCUPANCY", "message": "No active stay for this key"},
            )

        data = describe_block(block, datetime.now())
        data["key_tag_id"] = tag["id"]
        return {"success": True, "data": data}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error resolving checkout key: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "RESOLVE_CHECKOUT_KEY_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/request")
def create_checkout_request(request: CheckoutRequestCreate):
    """
    File a checkout request for staff.
    Only one open (SUBMITTED or CLAIMED) request may exist per stay.
    """
    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        block = fetch_block(cursor, request.occupancy_id, lock=True)
        if not block or block["visit_ended_at"] is not None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "NO_ACTIVE_OCCUPANCY", "message": "Stay not found or already ended"},
            )

        cursor.execute(
            """
            SELECT id, status FROM checkout_requests
            WHERE occupancy_id = %s AND status IN ('SUBMITTED', 'CLAIMED')
            LIMIT 1
            """,
            (block["id"],),
        )
        existing = cursor.fetchone()
        if existing:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "error_code": "CHECKOUT_ALREADY_REQUESTED",
                    "message": f"Checkout request {existing['id']} is already {existing['status']}",
                },
            )

        now = datetime.now()
        late = late_summary(block, now)
        column = "room_id" if block["room_id"] else "locker_id"
        cursor.execute(
            f"SELECT id FROM key_tags WHERE {column} = %s AND is_active = 1 LIMIT 1",
            (block["room_id"] or block["locker_id"],),
        )
        tag = cursor.fetchone()

        cursor.execute(
            """
            INSERT INTO checkout_requests
                (occupancy_id, customer_id, key_tag_id, kiosk_device_id, status, checklist_json,
                 late_minutes, late_fee_amount, ban_applied)
            VALUES (%s, %s, %s, %s, 'SUBMITTED', %s, %s, %s, %s)
            """,
            (
                block["id"], block["customer_id"], tag["id"] if tag else None,
                request.kiosk_device_id, json.dumps(request.checklist),
                late["late_minutes"], late["late_fee_amount"], late["ban_applied"],
            ),
        )
        request_id = cursor.lastrowid
        conn.commit()

        data = {
            "request_id": request_id,
            "status": "SUBMITTED",
            "kiosk_device_id": request.kiosk_device_id,
            "checklist": request.checklist,
            **describe_block(block, now),
        }
        publish([(events.CHECKOUT_REQUESTED, data)])

        logger.info(f"Checkout request {request_id} filed for block {block['id']} from {request.kiosk_device_id}")

        return {"success": True, "message": "Checkout requested", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating checkout request: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_CHECKOUT_REQUEST_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
