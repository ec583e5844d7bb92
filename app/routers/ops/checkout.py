"""
Checkout Router - Staff side of checkout

Kiosk requests are claimed by one staff member at a time (short lease),
verified, then completed. Manual checkout covers customers who skip the kiosk.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.config import CHECKOUT_CLAIM_TTL_MINUTES
from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.routers.kiosk.checkout import describe_block
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.helpers import to_money
from app.utils.occupancy import BLOCK_SELECT, close_occupancy, fetch_block

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["Checkout"])

MANUAL_WINDOW_MINUTES = 60


# ============== Request Models ==============

class ManualResolveRequest(BaseModel):
    number: Optional[str] = Field(None, max_length=10)
    occupancy_id: Optional[int] = None


class ManualCompleteRequest(BaseModel):
    occupancy_id: int


# ============== Helpers ==============

def _load_request(cursor, request_id: int) -> dict:
    cursor.execute("SELECT * FROM checkout_requests WHERE id = %s FOR UPDATE", (request_id,))
    row = cursor.fetchone()
    if not row:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "CHECKOUT_REQUEST_NOT_FOUND", "message": "Checkout request not found"},
        )
    return row


def _require_claimant(row: dict, staff_id: int):
    if row["status"] != "CLAIMED":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "NOT_CLAIMED", "message": f"Checkout request is {row['status']}"},
        )
    if row["claimed_by_staff_id"] != staff_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error_code": "NOT_CLAIMANT", "message": "Checkout request is claimed by another staff member"},
        )


def _request_payload(row: dict) -> dict:
    return {
        "request_id": row["id"],
        "occupancy_id": row["occupancy_id"],
        "status": row["status"],
        "claimed_by_staff_id": row.get("claimed_by_staff_id"),
        "claim_expires_at": row.get("claim_expires_at"),
        "items_confirmed": bool(row.get("items_confirmed")),
        "fee_paid": bool(row.get("fee_paid")),
        "late_fee_amount": to_money(row.get("late_fee_amount")),
    }


def _update_flag(request_id: int, column: str, auth: dict, message: str):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        row = _load_request(cursor, request_id)
        _require_claimant(row, auth["staff_id"])

        cursor.execute(f"UPDATE checkout_requests SET {column} = 1 WHERE id = %s", (request_id,))
        row[column] = 1
        conn.commit()

        payload = _request_payload(row)
        publish([(events.CHECKOUT_UPDATED, payload)])

        return {"success": True, "message": message, "data": payload}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error updating checkout request {request_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "UPDATE_CHECKOUT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


# ============== Endpoints ==============

@router.get("/requests")
def list_checkout_requests(
    request_status: Optional[str] = Query(None, alias="status", pattern=r"^(SUBMITTED|CLAIMED|VERIFIED|CANCELLED)$"),
    auth: dict = Depends(verify_bearer_token),
):
    """Checkout requests, open ones by default"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        if request_status:
            where_sql = "WHERE cr.status = %s"
            params = [request_status]
        else:
            where_sql = "WHERE cr.status IN ('SUBMITTED', 'CLAIMED')"
            params = []

        cursor.execute(
            f"""
            SELECT cr.*, c.name as customer_name, cb.ends_at as scheduled_checkout_at,
                   r.number as room_number, l.number as locker_number, s.name as claimed_by_name
            FROM checkout_requests cr
            JOIN customers c ON cr.customer_id = c.id
            JOIN checkin_blocks cb ON cr.occupancy_id = cb.id
            LEFT JOIN rooms r ON cb.room_id = r.id
            LEFT JOIN lockers l ON cb.locker_id = l.id
            LEFT JOIN staff s ON cr.claimed_by_staff_id = s.id
            {where_sql}
            ORDER BY cr.created_at
            """,
            params,
        )
        rows = cursor.fetchall()
        for row in rows:
            row["late_fee_amount"] = to_money(row["late_fee_amount"])
            if isinstance(row.get("checklist_json"), str):
                row["checklist_json"] = json.loads(row["checklist_json"])

        return {"success": True, "data": rows}

    except Exception as e:
        logger.error(f"Error listing checkout requests: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_CHECKOUT_REQUESTS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/manual-candidates")
def manual_candidates(auth: dict = Depends(verify_bearer_token)):
    """Stays that end within the hour or are already overdue"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        now = datetime.now()
        cursor.execute(
            BLOCK_SELECT
            + """
            WHERE v.ended_at IS NULL
              AND cb.ends_at <= %s
              AND cb.ends_at = (
                  SELECT MAX(cb2.ends_at) FROM checkin_blocks cb2 WHERE cb2.visit_id = cb.visit_id
              )
            ORDER BY cb.ends_at
            """,
            (now + timedelta(minutes=MANUAL_WINDOW_MINUTES),),
        )
        candidates = [describe_block(block, now) for block in cursor.fetchall()]

        return {"success": True, "data": candidates}

    except Exception as e:
        logger.error(f"Error listing manual checkout candidates: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "MANUAL_CANDIDATES_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/manual-resolve")
def manual_resolve(request: ManualResolveRequest, auth: dict = Depends(verify_bearer_token)):
    """Look up an open stay by room/locker number or occupancy id"""
    if not request.number and not request.occupancy_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "LOOKUP_REQUIRED", "message": "number or occupancy_id is required"},
        )

    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        if request.occupancy_id:
            block = fetch_block(cursor, request.occupancy_id)
            if block and block["visit_ended_at"] is not None:
                block = None
        else:
            cursor.execute(
                BLOCK_SELECT
                + """
                WHERE v.ended_at IS NULL AND (r.number = %s OR l.number = %s)
                ORDER BY cb.ends_at DESC
                LIMIT 1
                """,
                (request.number, request.number),
            )
            block = cursor.fetchone()

        if not block:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "NO_ACTIVE_OCCUPANCY", "message": "No active stay found"},
            )

        return {"success": True, "data": describe_block(block, datetime.now())}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error resolving manual checkout: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "MANUAL_RESOLVE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/manual-complete")
def manual_complete(request: ManualCompleteRequest, auth: dict = Depends(verify_bearer_token)):
    """Check a customer out without a kiosk request"""
    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        block = fetch_block(cursor, request.occupancy_id, lock=True)
        if not block:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "NO_ACTIVE_OCCUPANCY", "message": "Stay not found"},
            )

        if block["visit_ended_at"] is not None:
            # repeat of an earlier checkout: report what was recorded then
            cursor.execute(
                """
                SELECT late_minutes, fee_amount, ban_applied
                FROM late_checkout_events
                WHERE occupancy_id = %s
                ORDER BY id DESC
                LIMIT 1
                """,
                (block["id"],),
            )
            event = cursor.fetchone() or {}
            data = {
                "occupancy_id": block["id"],
                "visit_id": block["visit_id"],
                "late_minutes": event.get("late_minutes") or 0,
                "late_fee_amount": to_money(event.get("fee_amount")),
                "ban_applied": bool(event.get("ban_applied")),
                "checked_out_at": block["visit_ended_at"],
                "already_checked_out": True,
            }
            return {"success": True, "message": "Already checked out", "data": data}

        now = datetime.now()
        summary, emitted = close_occupancy(conn, cursor, block, auth["staff_id"], now)

        # any kiosk request left open for this stay is moot now
        cursor.execute(
            """
            UPDATE checkout_requests SET status = 'CANCELLED'
            WHERE occupancy_id = %s AND status IN ('SUBMITTED', 'CLAIMED')
            """,
            (block["id"],),
        )
        conn.commit()

        data = {"occupancy_id": block["id"], "visit_id": block["visit_id"], **summary, "already_checked_out": False}
        emitted.append((events.CHECKOUT_COMPLETED, data))
        publish(emitted)

        return {"success": True, "message": "Checkout completed", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error completing manual checkout: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "MANUAL_COMPLETE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{request_id}/claim")
def claim_checkout(request_id: int, auth: dict = Depends(verify_bearer_token)):
    """Take a submitted request, or one whose previous claim lapsed"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        row = _load_request(cursor, request_id)
        now = datetime.now()

        claimable = row["status"] == "SUBMITTED" or (
            row["status"] == "CLAIMED"
            and row["claim_expires_at"] is not None
            and row["claim_expires_at"] <= now
        )
        if not claimable:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "ALREADY_CLAIMED", "message": f"Checkout request is {row['status']}"},
            )

        expires_at = now + timedelta(minutes=CHECKOUT_CLAIM_TTL_MINUTES)
        cursor.execute(
            """
            UPDATE checkout_requests
            SET status = 'CLAIMED', claimed_by_staff_id = %s, claimed_at = %s, claim_expires_at = %s
            WHERE id = %s
            """,
            (auth["staff_id"], now, expires_at, request_id),
        )
        row.update({
            "status": "CLAIMED",
            "claimed_by_staff_id": auth["staff_id"],
            "claimed_at": now,
            "claim_expires_at": expires_at,
        })
        conn.commit()

        payload = _request_payload(row)
        publish([(events.CHECKOUT_CLAIMED, payload)])

        return {"success": True, "message": "Checkout claimed", "data": payload}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error claiming checkout {request_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CLAIM_CHECKOUT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{request_id}/mark-fee-paid")
def mark_fee_paid(request_id: int, auth: dict = Depends(verify_bearer_token)):
    return _update_flag(request_id, "fee_paid", auth, "Late fee marked paid")


@router.post("/{request_id}/confirm-items")
def confirm_items(request_id: int, auth: dict = Depends(verify_bearer_token)):
    return _update_flag(request_id, "items_confirmed", auth, "Items confirmed")


@router.post("/{request_id}/complete")
def complete_checkout(request_id: int, auth: dict = Depends(verify_bearer_token)):
    """
    Finish a claimed checkout: release the room/locker, end the visit and
    record any late fee or ban.
    """
    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        row = _load_request(cursor, request_id)
        _require_claimant(row, auth["staff_id"])

        if not row["items_confirmed"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "ITEMS_NOT_CONFIRMED", "message": "Returned items must be confirmed first"},
            )
        if to_money(row["late_fee_amount"]) > 0 and not row["fee_paid"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "FEE_NOT_PAID", "message": "Late fee must be paid first"},
            )

        block = fetch_block(cursor, row["occupancy_id"], lock=True)
        if not block or block["visit_ended_at"] is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "VISIT_ENDED", "message": "Stay already ended"},
            )

        now = datetime.now()
        # the customer pays what the kiosk showed when the request was filed
        frozen = {
            "late_minutes": row["late_minutes"],
            "late_fee_amount": row["late_fee_amount"],
            "ban_applied": row["ban_applied"],
        }
        summary, emitted = close_occupancy(conn, cursor, block, auth["staff_id"], now, request_id, late=frozen)

        cursor.execute(
            "UPDATE checkout_requests SET status = 'VERIFIED', completed_at = %s WHERE id = %s",
            (now, request_id),
        )
        conn.commit()

        data = {"request_id": request_id, "occupancy_id": block["id"], "visit_id": block["visit_id"], **summary}
        emitted.append((events.CHECKOUT_COMPLETED, data))
        publish(emitted)

        return {"success": True, "message": "Checkout completed", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error completing checkout {request_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "COMPLETE_CHECKOUT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
