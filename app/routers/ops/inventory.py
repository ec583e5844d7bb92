"""
Inventory Router - Room/locker status, availability and key tags
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.inventory import compute_available
from app.utils.pricing import LOCKER, ROOM_TIERS
from app.utils.room_status import ROOM_STATUSES, OCCUPIED, validate_transition

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Inventory"])

IN_PROGRESS_LANE_STATUSES = (
    "ACTIVE", "AWAITING_CUSTOMER", "AWAITING_ASSIGNMENT",
    "AWAITING_PAYMENT", "AWAITING_SIGNATURE",
)


# ============== Request Models ==============

class RoomStatusUpdate(BaseModel):
    status: str = Field(..., pattern=r"^(DIRTY|CLEANING|CLEAN|OCCUPIED)$")
    override: bool = False
    override_reason: Optional[str] = Field(None, max_length=255)


class KeyResolveRequest(BaseModel):
    tag_code: str = Field(..., min_length=1, max_length=100)


# ============== Helpers ==============

def load_availability(cursor) -> dict:
    """
    Supply (CLEAN, unassigned, not held by a lane in progress or an upgrade
    hold) minus ACTIVE/OFFERED waitlist demand per tier.
    """
    lane_placeholders = ", ".join(["%s"] * len(IN_PROGRESS_LANE_STATUSES))
    cursor.execute(
        f"""
        SELECT r.type as tier, COUNT(*) as count
        FROM rooms r
        WHERE r.status = 'CLEAN'
          AND r.assigned_to_customer_id IS NULL
          AND NOT EXISTS (
              SELECT 1 FROM lane_sessions ls
              WHERE ls.assigned_resource_type = 'room'
                AND ls.assigned_resource_id = r.id
                AND ls.status IN ({lane_placeholders})
          )
          AND NOT EXISTS (
              SELECT 1 FROM inventory_reservations ir
              WHERE ir.resource_type = 'room' AND ir.resource_id = r.id
                AND ir.kind = 'UPGRADE_HOLD' AND ir.released_at IS NULL
          )
        GROUP BY r.type
        """,
        list(IN_PROGRESS_LANE_STATUSES),
    )
    supply = {row["tier"]: row["count"] for row in cursor.fetchall()}

    cursor.execute(
        f"""
        SELECT COUNT(*) as count
        FROM lockers l
        WHERE l.status = 'CLEAN'
          AND l.assigned_to_customer_id IS NULL
          AND NOT EXISTS (
              SELECT 1 FROM lane_sessions ls
              WHERE ls.assigned_resource_type = 'locker'
                AND ls.assigned_resource_id = l.id
                AND ls.status IN ({lane_placeholders})
          )
        """,
        list(IN_PROGRESS_LANE_STATUSES),
    )
    supply[LOCKER] = cursor.fetchone()["count"]

    cursor.execute(
        """
        SELECT desired_tier as tier, COUNT(*) as count
        FROM waitlist
        WHERE status IN ('ACTIVE', 'OFFERED')
        GROUP BY desired_tier
        """
    )
    demand = {row["tier"]: row["count"] for row in cursor.fetchall()}

    return {
        "supply": {tier: supply.get(tier, 0) for tier in list(ROOM_TIERS) + [LOCKER]},
        "waitlist_demand": {tier: demand.get(tier, 0) for tier in ROOM_TIERS},
        "available": compute_available(supply, demand),
    }


# ============== Endpoints ==============

@router.get("/inventory/summary")
def inventory_summary(auth: dict = Depends(verify_bearer_token)):
    """Room counts by tier and status, locker counts by status"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT type, status, COUNT(*) as count FROM rooms GROUP BY type, status")
        rooms = {tier: {s: 0 for s in ROOM_STATUSES} for tier in ROOM_TIERS}
        for row in cursor.fetchall():
            rooms.setdefault(row["type"], {})[row["status"]] = row["count"]

        cursor.execute("SELECT status, COUNT(*) as count FROM lockers GROUP BY status")
        lockers = {"CLEAN": 0, "OCCUPIED": 0}
        for row in cursor.fetchall():
            lockers[row["status"]] = row["count"]

        return {"success": True, "data": {"rooms": rooms, "lockers": lockers}}

    except Exception as e:
        logger.error(f"Error loading inventory summary: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "INVENTORY_SUMMARY_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/inventory/available")
def inventory_available(auth: dict = Depends(verify_bearer_token)):
    """Units a walk-in customer could take right now"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        return {"success": True, "data": load_availability(cursor)}

    except Exception as e:
        logger.error(f"Error loading availability: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "INVENTORY_AVAILABLE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/rooms")
def list_rooms(
    room_status: Optional[str] = Query(None, alias="status", pattern=r"^(DIRTY|CLEANING|CLEAN|OCCUPIED)$"),
    tier: Optional[str] = Query(None, pattern=r"^(STANDARD|DOUBLE|SPECIAL)$"),
    auth: dict = Depends(verify_bearer_token),
):
    """Rooms with their current occupant"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_clauses = []
        params = []
        if room_status:
            where_clauses.append("r.status = %s")
            params.append(room_status)
        if tier:
            where_clauses.append("r.type = %s")
            params.append(tier)
        where_sql = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""

        cursor.execute(
            f"""
            SELECT r.id, r.number, r.type, r.status, r.last_status_change, r.override_flag,
                   r.assigned_to_customer_id, c.name as customer_name
            FROM rooms r
            LEFT JOIN customers c ON r.assigned_to_customer_id = c.id
            {where_sql}
            ORDER BY CAST(r.number AS UNSIGNED)
            """,
            params,
        )
        return {"success": True, "data": cursor.fetchall()}

    except Exception as e:
        logger.error(f"Error listing rooms: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_ROOMS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.patch("/rooms/{room_id}/status")
def update_room_status(room_id: int, request: RoomStatusUpdate, auth: dict = Depends(verify_bearer_token)):
    """Move a single room to a new status; non-adjacent moves need an override with a reason"""
    if request.override and not (request.override_reason or "").strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "OVERRIDE_REASON_REQUIRED", "message": "Override requires a reason"},
        )

    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "SELECT id, number, status, assigned_to_customer_id FROM rooms WHERE id = %s FOR UPDATE",
            (room_id,),
        )
        room = cursor.fetchone()
        if not room:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "ROOM_NOT_FOUND", "message": "Room not found"},
            )

        if room["assigned_to_customer_id"] and request.status != OCCUPIED:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "error_code": "ROOM_ASSIGNED",
                    "message": f"Room {room['number']} is assigned to a customer; check them out first",
                },
            )

        result = validate_transition(room["status"], request.status, request.override)
        if not result["ok"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "TRANSITION_REQUIRES_OVERRIDE",
                    "message": f"Moving room {room['number']} from {room['status']} to {request.status} requires an override",
                },
            )

        now = datetime.now()
        is_override = request.override and room["status"] != request.status
        cursor.execute(
            "UPDATE rooms SET status = %s, last_status_change = %s, override_flag = %s WHERE id = %s",
            (request.status, now, 1 if is_override else 0, room_id),
        )
        log_audit(conn, auth["staff_id"], "OVERRIDE" if is_override else "STATUS_CHANGE", "room", room_id,
                  old_value={"status": room["status"]},
                  new_value={"status": request.status, "override_reason": request.override_reason})
        conn.commit()

        publish([
            (events.ROOM_STATUS_CHANGED, {
                "room_id": room_id,
                "room_number": room["number"],
                "previous_status": room["status"],
                "status": request.status,
                "override": is_override,
            }),
            (events.INVENTORY_UPDATED, {"reason": "ROOM_STATUS_CHANGED"}),
        ])

        return {
            "success": True,
            "message": "Room status updated",
            "data": {"room_id": room_id, "status": request.status, "override": is_override},
        }

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error updating room {room_id} status: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "UPDATE_ROOM_STATUS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/keys/resolve")
def resolve_key(request: KeyResolveRequest, auth: dict = Depends(verify_bearer_token)):
    """Look up the room or locker behind a scanned key tag"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            """
            SELECT kt.id, kt.tag_code, kt.room_id, kt.locker_id,
                   r.number as room_number, r.type as room_tier, r.status as room_status,
                   l.number as locker_number, l.status as locker_status
            FROM key_tags kt
            LEFT JOIN rooms r ON kt.room_id = r.id
            LEFT JOIN lockers l ON kt.locker_id = l.id
            WHERE kt.tag_code = %s AND kt.is_active = 1
            """,
            (request.tag_code,),
        )
        tag = cursor.fetchone()
        if not tag:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "KEY_NOT_FOUND", "message": "Key tag not found or inactive"},
            )

        tag["resource_type"] = "room" if tag["room_id"] else "locker"
        return {"success": True, "data": tag}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error resolving key: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "RESOLVE_KEY_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
