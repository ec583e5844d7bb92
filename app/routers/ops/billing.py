"""
Billing Router - Price previews, upgrade fees and payment intents
"""
import json
import logging
from datetime import datetime, date
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.helpers import to_money
from app.utils.pricing import (
    age_on,
    calculate_quote,
    calculate_renewal_quote,
    get_upgrade_fee,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])
payments_router = APIRouter(prefix="/payments", tags=["Billing"])


# ============== Request Models ==============

class QuoteRequest(BaseModel):
    rental_type: str = Field(..., pattern=r"^(LOCKER|STANDARD|DOUBLE|SPECIAL|GYM_LOCKER)$")
    check_in_at: Optional[datetime] = None
    dob: Optional[date] = None
    membership_card_type: Optional[str] = Field(None, pattern=r"^(NONE|SIX_MONTH)$")
    membership_valid_until: Optional[date] = None
    include_six_month_purchase: bool = False
    renewal_hours: Optional[int] = None


class MarkPaidRequest(BaseModel):
    payment_method: str = Field("CASH", pattern=r"^(CASH|CARD)$")


# ============== Endpoints ==============

@router.post("/quote")
def preview_quote(request: QuoteRequest, auth: dict = Depends(verify_bearer_token)):
    """Price a check-in or renewal without touching the database"""
    if request.renewal_hours not in (None, 2, 6):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "INVALID_RENEWAL_HOURS", "message": "renewal_hours must be 6 or 2"},
        )

    check_in = request.check_in_at or datetime.now()
    age = age_on(request.dob, check_in.date())

    if request.renewal_hours:
        quote = calculate_renewal_quote(
            request.rental_type, check_in, request.renewal_hours, age,
            request.membership_card_type, request.membership_valid_until,
            request.include_six_month_purchase,
        )
    else:
        quote = calculate_quote(
            request.rental_type, check_in, age,
            request.membership_card_type, request.membership_valid_until,
            request.include_six_month_purchase,
        )

    return {"success": True, "data": quote}


@router.get("/upgrade-fee")
def upgrade_fee(
    from_tier: str = Query(..., pattern=r"^(LOCKER|STANDARD|DOUBLE|SPECIAL|GYM_LOCKER)$"),
    to_tier: str = Query(..., pattern=r"^(STANDARD|DOUBLE|SPECIAL)$"),
    auth: dict = Depends(verify_bearer_token),
):
    fee = get_upgrade_fee("LOCKER" if from_tier == "GYM_LOCKER" else from_tier, to_tier)
    if fee is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "NOT_AN_UPGRADE", "message": f"{from_tier} to {to_tier} is not an upgrade"},
        )
    return {"success": True, "data": {"from_tier": from_tier, "to_tier": to_tier, "fee": fee}}


@payments_router.get("/{intent_id}")
def get_payment_intent(intent_id: int, auth: dict = Depends(verify_bearer_token)):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT * FROM payment_intents WHERE id = %s", (intent_id,))
        intent = cursor.fetchone()
        if not intent:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "PAYMENT_INTENT_NOT_FOUND", "message": "Payment intent not found"},
            )
        intent["amount"] = to_money(intent["amount"])
        if isinstance(intent.get("quote_json"), str):
            intent["quote_json"] = json.loads(intent["quote_json"])

        return {"success": True, "data": intent}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error loading payment intent {intent_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_PAYMENT_INTENT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@payments_router.post("/{intent_id}/mark-paid")
def mark_payment_paid(intent_id: int, request: MarkPaidRequest, auth: dict = Depends(verify_bearer_token)):
    """
    Record that the customer paid at the register.
    A lane session waiting on this intent moves on to the agreement.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT * FROM payment_intents WHERE id = %s FOR UPDATE", (intent_id,))
        intent = cursor.fetchone()
        if not intent:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "PAYMENT_INTENT_NOT_FOUND", "message": "Payment intent not found"},
            )
        if intent["status"] == "PAID":
            return {
                "success": True,
                "message": "Payment already marked paid",
                "data": {"payment_intent_id": intent_id, "status": "PAID"},
            }
        if intent["status"] != "DUE":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "PAYMENT_NOT_DUE", "message": f"Payment intent is {intent['status']}"},
            )

        now = datetime.now()
        cursor.execute(
            "UPDATE payment_intents SET status = 'PAID', payment_method = %s, paid_at = %s WHERE id = %s",
            (request.payment_method, now, intent_id),
        )

        emitted = []
        if intent["lane_session_id"]:
            cursor.execute(
                """
                UPDATE lane_sessions SET status = 'AWAITING_SIGNATURE'
                WHERE id = %s AND payment_intent_id = %s AND status = 'AWAITING_PAYMENT'
                """,
                (intent["lane_session_id"], intent_id),
            )
            cursor.execute(
                "SELECT id, lane_id, status FROM lane_sessions WHERE id = %s",
                (intent["lane_session_id"],),
            )
            session = cursor.fetchone()
            if session:
                emitted.append((events.SESSION_UPDATED, {
                    "session_id": session["id"],
                    "lane_id": session["lane_id"],
                    "status": session["status"],
                    "payment_intent_id": intent_id,
                }, session["lane_id"]))

        log_audit(conn, auth["staff_id"], "PAYMENT_MARKED_PAID", "payment_intent", intent_id,
                  old_value={"status": intent["status"]},
                  new_value={
                      "status": "PAID",
                      "payment_method": request.payment_method,
                      "amount": to_money(intent["amount"]),
                  })
        conn.commit()
        publish(emitted)

        return {
            "success": True,
            "message": "Payment marked paid",
            "data": {
                "payment_intent_id": intent_id,
                "status": "PAID",
                "payment_method": request.payment_method,
                "paid_at": now,
            },
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error marking payment {intent_id} paid: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "MARK_PAID_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
