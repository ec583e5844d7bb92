"""
Lanes Router - Front desk check-in lane sessions

A lane session walks one customer through
start -> select-rental -> payment-intent -> mark-paid -> sign-agreement -> assign.
Either side of the counter may propose a rental (and hold a unit) before
it is locked; a past-due balance blocks selection until an admin bypasses it.
Every change is pushed to the lane's kiosk as SESSION_UPDATED.
"""
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends
from pydantic import BaseModel, Field

from app.config import GYM_LOCKER_ELIGIBLE_RANGES
from app.db import get_db_connection
from app.middleware import require_admin, verify_bearer_token
from app.routers.ops.customers import ban_remaining_days
from app.routers.ops.visits import check_customer_can_check_in, fetch_open_visit
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.helpers import to_money
from app.utils.inventory import allowed_rentals, get_room_tier, parse_eligible_ranges
from app.utils.occupancy import (
    add_block,
    add_charge,
    lock_locker_for_assignment,
    lock_room_for_assignment,
    occupy_resources,
    open_visit,
    visit_blocks,
)
from app.utils.pricing import (
    GYM_LOCKER,
    LOCKER,
    ROOM_TIERS,
    age_on,
    calculate_quote,
    calculate_renewal_quote,
    is_upgrade,
)
from app.utils.stays import FINAL2H, RENEWAL, can_final_extend, can_renew, total_hours

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lanes", tags=["Lanes"])

IN_PROGRESS = (
    "ACTIVE", "AWAITING_CUSTOMER", "AWAITING_ASSIGNMENT",
    "AWAITING_PAYMENT", "AWAITING_SIGNATURE",
)
SELECTABLE = ("ACTIVE", "AWAITING_CUSTOMER", "AWAITING_PAYMENT")

AGREEMENT_VERSION = "2024-01"

CHARGE_TYPES = {
    "Membership Fee": "MEMBERSHIP_FEE",
    "6 Month Membership": "MEMBERSHIP_PURCHASE",
    "Renewal (2 Hours)": "RENEWAL",
}


# ============== Request Models ==============

class LaneStartRequest(BaseModel):
    customer_id: Optional[int] = None
    membership_number: Optional[str] = Field(None, max_length=50)
    checkin_mode: str = Field("INITIAL", pattern=r"^(INITIAL|RENEWAL)$")
    visit_id: Optional[int] = None
    renewal_hours: Optional[int] = None


class SelectRentalRequest(BaseModel):
    rental_type: str = Field(..., pattern=r"^(LOCKER|STANDARD|DOUBLE|SPECIAL|GYM_LOCKER)$")
    waitlist_desired_type: Optional[str] = Field(None, pattern=r"^(STANDARD|DOUBLE|SPECIAL)$")
    backup_rental_type: Optional[str] = Field(None, pattern=r"^(LOCKER|STANDARD|DOUBLE|SPECIAL|GYM_LOCKER)$")


class ProposeSelectionRequest(BaseModel):
    rental_type: str = Field(..., pattern=r"^(LOCKER|STANDARD|DOUBLE|SPECIAL|GYM_LOCKER)$")
    proposed_by: str = Field(..., pattern=r"^(CUSTOMER|EMPLOYEE)$")
    resource_type: Optional[str] = Field(None, pattern=r"^(room|locker)$")
    resource_id: Optional[int] = None


class AcknowledgeSelectionRequest(BaseModel):
    acknowledged_by: str = Field(..., pattern=r"^(CUSTOMER|EMPLOYEE)$")


class PastDueBypassRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class PaymentIntentRequest(BaseModel):
    include_six_month_purchase: bool = False


class SignAgreementRequest(BaseModel):
    signature_text: str = Field(..., min_length=1, max_length=200)


class AssignRequest(BaseModel):
    resource_type: Optional[str] = Field(None, pattern=r"^(room|locker)$")
    resource_id: Optional[int] = None


# ============== Helpers ==============

def _load_session(cursor, lane_id: str, lock: bool = True) -> dict:
    placeholders = ", ".join(["%s"] * len(IN_PROGRESS))
    cursor.execute(
        f"""
        SELECT * FROM lane_sessions
        WHERE lane_id = %s AND status IN ({placeholders})
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        {"FOR UPDATE" if lock else ""}
        """,
        [lane_id] + list(IN_PROGRESS),
    )
    session = cursor.fetchone()
    if not session:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "NO_ACTIVE_SESSION", "message": f"No active session on lane {lane_id}"},
        )
    for key in ("allowed_rentals", "price_quote_json", "disclaimers_ack_json"):
        if isinstance(session.get(key), str):
            session[key] = json.loads(session[key])
    return session


def _session_payload(session: dict) -> dict:
    return {
        "session_id": session["id"],
        "lane_id": session["lane_id"],
        "status": session["status"],
        "customer_id": session.get("customer_id"),
        "customer_name": session.get("customer_display_name"),
        "checkin_mode": session.get("checkin_mode"),
        "allowed_rentals": session.get("allowed_rentals"),
        "desired_rental_type": session.get("desired_rental_type"),
        "waitlist_desired_type": session.get("waitlist_desired_type"),
        "backup_rental_type": session.get("backup_rental_type"),
        "payment_intent_id": session.get("payment_intent_id"),
        "price_quote": session.get("price_quote_json"),
        "assigned_resource_type": session.get("assigned_resource_type"),
        "assigned_resource_id": session.get("assigned_resource_id"),
        "proposed_rental_type": session.get("proposed_rental_type"),
        "proposed_by": session.get("proposed_by"),
        "past_due_bypassed": bool(session.get("past_due_bypassed")),
    }


def _set_status(cursor, session: dict, new_status: str, **fields):
    assignments = ["status = %s"]
    params = [new_status]
    for column, value in fields.items():
        assignments.append(f"{column} = %s")
        params.append(json.dumps(value, default=str) if isinstance(value, (dict, list)) else value)
        session[column] = value
    cursor.execute(
        f"UPDATE lane_sessions SET {', '.join(assignments)} WHERE id = %s",
        params + [session["id"]],
    )
    session["status"] = new_status


def _check_stay_limit(blocks: list, renewal_hours: int):
    allowed = can_renew(total_hours(blocks), 6) if renewal_hours == 6 else can_final_extend(blocks)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "MAX_STAY_EXCEEDED",
                "message": f"A {renewal_hours} hour renewal is not allowed for this visit",
            },
        )


def _past_due_balance(cursor, customer_id: int) -> float:
    cursor.execute("SELECT past_due_balance FROM customers WHERE id = %s", (customer_id,))
    return to_money((cursor.fetchone() or {}).get("past_due_balance"))


def _check_past_due(cursor, session: dict):
    """Selection stays closed while the customer owes money, unless an admin bypassed it."""
    if session.get("past_due_bypassed"):
        return
    balance = _past_due_balance(cursor, session["customer_id"])
    if balance > 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "PAST_DUE_BLOCKED",
                "message": f"Past-due balance of ${balance:.2f} must be cleared before selection",
            },
        )


def _lock_resource(cursor, rental_type: str, resource_type: Optional[str], resource_id: Optional[int]):
    """Lock the unit and check it fits the rental; returns (room, locker)."""
    expected = "locker" if rental_type in (LOCKER, GYM_LOCKER) else "room"
    if resource_type != expected or not resource_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "RESOURCE_TYPE_MISMATCH",
                "message": f"{rental_type} requires a {expected} to be assigned",
            },
        )

    if expected == "locker":
        return None, lock_locker_for_assignment(cursor, resource_id)

    room = lock_room_for_assignment(cursor, resource_id)
    tier = get_room_tier(room["number"])
    if tier != rental_type:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "TIER_MISMATCH",
                "message": f"Room {room['number']} is {tier}, selection is {rental_type}",
            },
        )
    return room, None


def _check_not_held(cursor, resource_type: str, resource_id: int, session_id: int):
    placeholders = ", ".join(["%s"] * len(IN_PROGRESS))
    cursor.execute(
        f"""
        SELECT id, lane_id FROM lane_sessions
        WHERE assigned_resource_type = %s AND assigned_resource_id = %s
          AND id != %s AND status IN ({placeholders})
        LIMIT 1
        """,
        [resource_type, resource_id, session_id] + list(IN_PROGRESS),
    )
    held = cursor.fetchone()
    if held:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error_code": "RESOURCE_HELD",
                "message": f"That {resource_type} is held on lane {held['lane_id']}",
            },
        )


# ============== Endpoints ==============

@router.get("/sessions")
def list_lane_sessions(auth: dict = Depends(verify_bearer_token)):
    """Sessions currently in progress on any lane"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        placeholders = ", ".join(["%s"] * len(IN_PROGRESS))
        cursor.execute(
            f"""
            SELECT ls.*, s.name as staff_name
            FROM lane_sessions ls
            LEFT JOIN staff s ON ls.staff_id = s.id
            WHERE ls.status IN ({placeholders})
            ORDER BY ls.lane_id
            """,
            list(IN_PROGRESS),
        )
        sessions = cursor.fetchall()
        for s in sessions:
            for key in ("allowed_rentals", "price_quote_json", "disclaimers_ack_json"):
                if isinstance(s.get(key), str):
                    s[key] = json.loads(s[key])

        return {"success": True, "data": sessions}

    except Exception as e:
        logger.error(f"Error listing lane sessions: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_LANE_SESSIONS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/start")
def start_lane_session(lane_id: str, request: LaneStartRequest, auth: dict = Depends(verify_bearer_token)):
    """
    Start a check-in on a lane for a known customer.
    Any session already in progress on the lane is cancelled.
    """
    if request.customer_id is None and not request.membership_number:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "CUSTOMER_REQUIRED", "message": "customer_id or membership_number is required"},
        )
    if request.checkin_mode == "RENEWAL":
        if not request.visit_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "VISIT_REQUIRED", "message": "visit_id is required for RENEWAL mode"},
            )
        if request.renewal_hours not in (2, 6):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "INVALID_RENEWAL_HOURS", "message": "renewal_hours must be 6 or 2"},
            )

    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        now = datetime.now()

        if request.customer_id is not None:
            cursor.execute("SELECT * FROM customers WHERE id = %s", (request.customer_id,))
        else:
            cursor.execute(
                "SELECT * FROM customers WHERE membership_number = %s",
                (request.membership_number,),
            )
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

        ranges = parse_eligible_ranges(GYM_LOCKER_ELIGIBLE_RANGES)
        rentals = allowed_rentals(customer["membership_number"], ranges)

        if request.checkin_mode == "INITIAL":
            check_customer_can_check_in(cursor, customer["id"], now)
        else:
            visit = fetch_open_visit(cursor, request.visit_id)
            if visit["customer_id"] != customer["id"]:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"error_code": "VISIT_MISMATCH", "message": "Visit belongs to another customer"},
                )
            blocks = visit_blocks(cursor, visit["id"])
            _check_stay_limit(blocks, request.renewal_hours)
            # renewals keep the current rental
            rentals = [blocks[-1]["rental_type"]] if blocks else rentals

        placeholders = ", ".join(["%s"] * len(IN_PROGRESS))
        cursor.execute(
            f"UPDATE lane_sessions SET status = 'CANCELLED' WHERE lane_id = %s AND status IN ({placeholders})",
            [lane_id] + list(IN_PROGRESS),
        )

        cursor.execute(
            """
            INSERT INTO lane_sessions
                (lane_id, status, staff_id, customer_id, customer_display_name, membership_number,
                 checkin_mode, visit_id, renewal_hours, allowed_rentals)
            VALUES (%s, 'ACTIVE', %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                lane_id, auth["staff_id"], customer["id"], customer["name"],
                customer["membership_number"], request.checkin_mode, request.visit_id,
                request.renewal_hours, json.dumps(rentals),
            ),
        )
        session = {
            "id": cursor.lastrowid,
            "lane_id": lane_id,
            "status": "ACTIVE",
            "customer_id": customer["id"],
            "customer_display_name": customer["name"],
            "checkin_mode": request.checkin_mode,
            "allowed_rentals": rentals,
            "past_due_bypassed": False,
        }
        conn.commit()

        publish([(events.SESSION_UPDATED, _session_payload(session), lane_id)])

        data = _session_payload(session)
        data["past_due_balance"] = to_money(customer.get("past_due_balance"))
        data["past_due_blocked"] = data["past_due_balance"] > 0
        return {"success": True, "message": "Lane session started", "data": data}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error starting lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "START_LANE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/select-rental")
def select_rental(lane_id: str, request: SelectRentalRequest, auth: dict = Depends(verify_bearer_token)):
    """Lock in the rental type, optionally joining the waitlist for a higher tier"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        if session["status"] not in SELECTABLE:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "SELECTION_CLOSED", "message": f"Session is {session['status']}"},
            )
        _check_past_due(cursor, session)

        if request.rental_type not in (session["allowed_rentals"] or []):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "RENTAL_NOT_ALLOWED",
                    "message": f"{request.rental_type} is not available for this customer",
                },
            )

        if request.waitlist_desired_type:
            if session["checkin_mode"] != "INITIAL" or not is_upgrade(request.rental_type, request.waitlist_desired_type):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={
                        "error_code": "INVALID_WAITLIST_TIER",
                        "message": "Waitlist tier must be higher than the rental on a new check-in",
                    },
                )

        _set_status(
            cursor, session, "ACTIVE",
            desired_rental_type=request.rental_type,
            waitlist_desired_type=request.waitlist_desired_type,
            backup_rental_type=request.backup_rental_type or request.rental_type,
        )
        conn.commit()

        payload = _session_payload(session)
        publish([
            (events.SELECTION_LOCKED, {
                "session_id": session["id"],
                "rental_type": request.rental_type,
                "waitlist_desired_type": request.waitlist_desired_type,
            }, lane_id),
            (events.SESSION_UPDATED, payload, lane_id),
        ])

        return {"success": True, "message": "Rental selected", "data": payload}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error selecting rental on lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "SELECT_RENTAL_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/propose-selection")
def propose_selection(lane_id: str, request: ProposeSelectionRequest, auth: dict = Depends(verify_bearer_token)):
    """
    Suggest a rental from either side of the counter, optionally holding a
    specific room or locker for it. A held unit is left out of availability
    until the session completes or is cancelled. An employee proposal waits
    for the customer to acknowledge it.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        if session["status"] not in SELECTABLE:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "SELECTION_CLOSED", "message": f"Session is {session['status']}"},
            )
        if request.proposed_by == "CUSTOMER":
            _check_past_due(cursor, session)

        if request.rental_type not in (session["allowed_rentals"] or []):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "RENTAL_NOT_ALLOWED",
                    "message": f"{request.rental_type} is not available for this customer",
                },
            )

        had_hold = bool(session.get("assigned_resource_id"))
        if request.resource_type or request.resource_id:
            if session["checkin_mode"] != "INITIAL":
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"error_code": "HOLD_NOT_ALLOWED", "message": "Renewals keep their current unit"},
                )
            _lock_resource(cursor, request.rental_type, request.resource_type, request.resource_id)
            _check_not_held(cursor, request.resource_type, request.resource_id, session["id"])

        new_status = "AWAITING_CUSTOMER" if request.proposed_by == "EMPLOYEE" else "ACTIVE"
        _set_status(
            cursor, session, new_status,
            proposed_rental_type=request.rental_type,
            proposed_by=request.proposed_by,
            assigned_resource_type=request.resource_type,
            assigned_resource_id=request.resource_id,
        )
        conn.commit()

        payload = _session_payload(session)
        emitted = [
            (events.SELECTION_PROPOSED, {
                "session_id": session["id"],
                "rental_type": request.rental_type,
                "proposed_by": request.proposed_by,
                "resource_type": request.resource_type,
                "resource_id": request.resource_id,
            }, lane_id),
            (events.SESSION_UPDATED, payload, lane_id),
        ]
        if had_hold or request.resource_id:
            emitted.append((events.INVENTORY_UPDATED, {"reason": "LANE_HOLD"}))
        publish(emitted)

        return {"success": True, "message": "Selection proposed", "data": payload}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error proposing selection on lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "PROPOSE_SELECTION_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/acknowledge-selection")
def acknowledge_selection(
    lane_id: str,
    request: AcknowledgeSelectionRequest,
    auth: dict = Depends(verify_bearer_token),
):
    """The other side of the counter acknowledges the proposed or locked rental"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        rental_type = session.get("desired_rental_type") or session.get("proposed_rental_type")
        if not rental_type:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "NO_SELECTION", "message": "Nothing has been proposed yet"},
            )

        if session["status"] == "AWAITING_CUSTOMER" and request.acknowledged_by == "CUSTOMER":
            _set_status(cursor, session, "ACTIVE")
        conn.commit()

        payload = _session_payload(session)
        publish([
            (events.SELECTION_ACKNOWLEDGED, {
                "session_id": session["id"],
                "rental_type": rental_type,
                "acknowledged_by": request.acknowledged_by,
            }, lane_id),
            (events.SESSION_UPDATED, payload, lane_id),
        ])

        return {"success": True, "message": "Selection acknowledged", "data": payload}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error acknowledging selection on lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "ACKNOWLEDGE_SELECTION_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/past-due/bypass")
def bypass_past_due(lane_id: str, request: PastDueBypassRequest, auth: dict = Depends(require_admin)):
    """Let a customer with a past-due balance continue checking in on this lane"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        balance = _past_due_balance(cursor, session["customer_id"])

        _set_status(
            cursor, session, session["status"],
            past_due_bypassed=1,
            past_due_bypassed_by=auth["staff_id"],
        )
        log_audit(conn, auth["staff_id"], "PAST_DUE_BYPASSED", "lane_session", session["id"],
                  new_value={
                      "lane_id": lane_id,
                      "customer_id": session["customer_id"],
                      "past_due_balance": balance,
                      "reason": request.reason,
                  })
        conn.commit()

        payload = _session_payload(session)
        publish([(events.SESSION_UPDATED, payload, lane_id)])

        return {"success": True, "message": "Past-due balance bypassed", "data": payload}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error bypassing past due on lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "PAST_DUE_BYPASS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/payment-intent")
def create_payment_intent(lane_id: str, request: PaymentIntentRequest, auth: dict = Depends(verify_bearer_token)):
    """Price the selection and open a DUE payment intent"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        if not session["desired_rental_type"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "RENTAL_NOT_SELECTED", "message": "Select a rental first"},
            )
        if session["status"] not in SELECTABLE:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error_code": "PAYMENT_CLOSED", "message": f"Session is {session['status']}"},
            )

        cursor.execute(
            "SELECT dob, membership_card_type, membership_valid_until FROM customers WHERE id = %s",
            (session["customer_id"],),
        )
        customer = cursor.fetchone() or {}

        now = datetime.now()
        age = age_on(customer.get("dob"), now.date())
        if session["checkin_mode"] == "RENEWAL":
            quote = calculate_renewal_quote(
                session["desired_rental_type"], now, session["renewal_hours"], age,
                customer.get("membership_card_type"), customer.get("membership_valid_until"),
                request.include_six_month_purchase,
            )
        else:
            quote = calculate_quote(
                session["desired_rental_type"], now, age,
                customer.get("membership_card_type"), customer.get("membership_valid_until"),
                request.include_six_month_purchase,
            )
        quote["include_six_month_purchase"] = request.include_six_month_purchase

        if session["payment_intent_id"]:
            cursor.execute(
                "UPDATE payment_intents SET status = 'CANCELLED' WHERE id = %s AND status = 'DUE'",
                (session["payment_intent_id"],),
            )

        cursor.execute(
            """
            INSERT INTO payment_intents (lane_session_id, amount, status, quote_json)
            VALUES (%s, %s, 'DUE', %s)
            """,
            (session["id"], quote["total"], json.dumps(quote)),
        )
        intent_id = cursor.lastrowid

        _set_status(cursor, session, "AWAITING_PAYMENT", payment_intent_id=intent_id, price_quote_json=quote)
        conn.commit()

        publish([(events.SESSION_UPDATED, _session_payload(session), lane_id)])

        return {
            "success": True,
            "message": "Payment intent created",
            "data": {"payment_intent_id": intent_id, "amount": quote["total"], "quote": quote},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating payment intent on lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_PAYMENT_INTENT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/sign-agreement")
def sign_agreement(lane_id: str, request: SignAgreementRequest, auth: dict = Depends(verify_bearer_token)):
    """Customer signs the house agreement after paying"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        if session["status"] != "AWAITING_SIGNATURE":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "PAYMENT_REQUIRED",
                    "message": "Payment must be marked paid before signing",
                },
            )

        ack = {
            "agreement_version": AGREEMENT_VERSION,
            "signed_at": datetime.now().isoformat(),
            "signed_name": request.signature_text,
        }
        _set_status(cursor, session, "AWAITING_ASSIGNMENT", disclaimers_ack_json=ack)
        conn.commit()

        publish([(events.SESSION_UPDATED, _session_payload(session), lane_id)])

        return {"success": True, "message": "Agreement signed", "data": _session_payload(session)}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error signing agreement on lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "SIGN_AGREEMENT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/assign")
def assign_resource(lane_id: str, request: AssignRequest, auth: dict = Depends(verify_bearer_token)):
    """
    Hand over the room or locker and open (or extend) the visit.
    Runs SERIALIZABLE with the resource row locked so two lanes can't
    hand out the same unit.
    """
    conn = get_db_connection(serializable=True)
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        if session["status"] != "AWAITING_ASSIGNMENT":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "NOT_READY_FOR_ASSIGNMENT",
                    "message": f"Session is {session['status']}",
                },
            )

        cursor.execute(
            "SELECT id, status FROM payment_intents WHERE id = %s",
            (session["payment_intent_id"],),
        )
        intent = cursor.fetchone()
        if not intent or intent["status"] != "PAID":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "PAYMENT_REQUIRED", "message": "Payment must be marked paid before assignment"},
            )
        if not session["disclaimers_ack_json"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error_code": "AGREEMENT_REQUIRED", "message": "Agreement must be signed before assignment"},
            )

        now = datetime.now()
        rental_type = session["desired_rental_type"]
        customer_id = session["customer_id"]
        quote = session["price_quote_json"] or {}
        emitted = []

        if session["checkin_mode"] == "RENEWAL":
            fetch_open_visit(cursor, session["visit_id"])
            blocks = visit_blocks(cursor, session["visit_id"])
            # the visit may have been renewed since the session started
            _check_stay_limit(blocks, session["renewal_hours"])
            latest = blocks[-1]
            block_type = RENEWAL if session["renewal_hours"] == 6 else FINAL2H
            block = add_block(
                cursor, session["visit_id"], blocks, block_type, latest["rental_type"],
                latest["room_id"], latest["locker_id"], now, session["id"],
            )
            visit_id = session["visit_id"]
            resource_type = "room" if latest["room_id"] else "locker"
            resource_id = latest["room_id"] or latest["locker_id"]
        else:
            # a unit held at proposal time is the default
            resource_type = request.resource_type or session.get("assigned_resource_type")
            resource_id = request.resource_id or session.get("assigned_resource_id")
            room, locker = _lock_resource(cursor, rental_type, resource_type, resource_id)
            _check_not_held(cursor, resource_type, resource_id, session["id"])

            room_id = locker_id = None
            if locker:
                locker_id = locker["id"]
            else:
                room_id = room["id"]
                emitted.append((events.ROOM_ASSIGNED, {
                    "room_id": room_id,
                    "room_number": room["number"],
                    "customer_id": customer_id,
                }))

            visit_id, block = open_visit(cursor, customer_id, rental_type, room_id, locker_id, now, session["id"])
            occupy_resources(cursor, customer_id, room_id, locker_id, now)

            if session["waitlist_desired_type"] in ROOM_TIERS:
                cursor.execute(
                    """
                    INSERT INTO waitlist (visit_id, checkin_block_id, desired_tier, backup_tier, status)
                    VALUES (%s, %s, %s, %s, 'ACTIVE')
                    """,
                    (visit_id, block["id"], session["waitlist_desired_type"], session["backup_rental_type"] or rental_type),
                )
                emitted.append((events.WAITLIST_CREATED, {
                    "waitlist_id": cursor.lastrowid,
                    "visit_id": visit_id,
                    "desired_tier": session["waitlist_desired_type"],
                }))

        for item in quote.get("line_items", []):
            add_charge(
                cursor, visit_id, block["id"],
                CHARGE_TYPES.get(item["description"], "RENTAL"),
                item["amount"], item["description"], intent["id"],
            )

        if quote.get("include_six_month_purchase"):
            cursor.execute(
                """
                UPDATE customers
                SET membership_card_type = 'SIX_MONTH',
                    membership_valid_until = DATE_ADD(CURDATE(), INTERVAL 6 MONTH)
                WHERE id = %s
                """,
                (customer_id,),
            )

        _set_status(
            cursor, session, "COMPLETED",
            assigned_resource_type=resource_type,
            assigned_resource_id=resource_id,
            visit_id=visit_id,
        )
        log_audit(conn, auth["staff_id"], "ASSIGNMENT_CREATED", resource_type, resource_id,
                  new_value={
                      "lane_id": lane_id,
                      "session_id": session["id"],
                      "visit_id": visit_id,
                      "block": block,
                      "amount": to_money(quote.get("total")),
                  })
        conn.commit()

        emitted.extend([
            (events.ASSIGNMENT_CREATED, {
                "session_id": session["id"],
                "resource_type": resource_type,
                "resource_id": resource_id,
                "visit_id": visit_id,
                "ends_at": block["ends_at"],
            }, lane_id),
            (events.INVENTORY_UPDATED, {"reason": "ASSIGNMENT"}),
            (events.SESSION_UPDATED, _session_payload(session), lane_id),
        ])
        publish(emitted)

        return {
            "success": True,
            "message": "Assigned",
            "data": {
                "visit_id": visit_id,
                "block": block,
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        }

    except HTTPException as e:
        conn.rollback()
        publish([(events.ASSIGNMENT_FAILED, {"reason": e.detail}, lane_id)])
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error assigning resource on lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "ASSIGN_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{lane_id}/reset")
def reset_lane(lane_id: str, auth: dict = Depends(verify_bearer_token)):
    """Abandon the lane's session and void its unpaid payment intent"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        session = _load_session(cursor, lane_id)
        if session["payment_intent_id"]:
            cursor.execute(
                "UPDATE payment_intents SET status = 'CANCELLED' WHERE id = %s AND status = 'DUE'",
                (session["payment_intent_id"],),
            )
        _set_status(cursor, session, "CANCELLED")
        conn.commit()

        publish([(events.SESSION_UPDATED, _session_payload(session), lane_id)])

        return {"success": True, "message": "Lane reset", "data": _session_payload(session)}

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error resetting lane {lane_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "RESET_LANE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
