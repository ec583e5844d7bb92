"""
Cleaning Router - Batch room status changes from the cleaning station
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import verify_bearer_token
from app.utils import broadcaster as events
from app.utils.audit import log_audit
from app.utils.broadcaster import publish
from app.utils.room_status import OCCUPIED, validate_transition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cleaning", tags=["Cleaning"])


# ============== Request Models ==============

class CleaningBatchRequest(BaseModel):
    room_ids: List[int] = Field(..., min_length=1, max_length=50)
    target_status: str = Field(..., pattern=r"^(DIRTY|CLEANING|CLEAN)$")
    override: bool = False
    override_reason: Optional[str] = Field(None, max_length=255)


# ============== Endpoints ==============

@router.post("/batch")
def create_cleaning_batch(request: CleaningBatchRequest, auth: dict = Depends(verify_bearer_token)):
    """
    Move several rooms to one status in a single transaction.
    Each room succeeds or fails on its own; the batch is complete only when
    every room moved.
    """
    if request.override and not (request.override_reason or "").strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "OVERRIDE_REASON_REQUIRED", "message": "Override requires a reason"},
        )

    room_ids = list(dict.fromkeys(request.room_ids))
    staff_id = auth["staff_id"]

    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        now = datetime.now()
        cursor.execute(
            "INSERT INTO cleaning_batches (staff_id, started_at, room_count) VALUES (%s, %s, %s)",
            (staff_id, now, len(room_ids)),
        )
        batch_id = cursor.lastrowid

        placeholders = ", ".join(["%s"] * len(room_ids))
        cursor.execute(
            f"""
            SELECT id, number, status, assigned_to_customer_id
            FROM rooms WHERE id IN ({placeholders})
            FOR UPDATE
            """,
            room_ids,
        )
        rooms = {row["id"]: row for row in cursor.fetchall()}

        results = []
        emitted = []
        for room_id in room_ids:
            room = rooms.get(room_id)
            if not room:
                results.append({"room_id": room_id, "success": False, "error": "Room not found"})
                continue

            if room["status"] == OCCUPIED and room["assigned_to_customer_id"]:
                results.append({
                    "room_id": room_id,
                    "room_number": room["number"],
                    "success": False,
                    "error": "Room is occupied by a customer",
                })
                continue

            check = validate_transition(room["status"], request.target_status, request.override)
            if not check["ok"]:
                results.append({
                    "room_id": room_id,
                    "room_number": room["number"],
                    "previous_status": room["status"],
                    "success": False,
                    "needs_override": check["needs_override"],
                    "error": f"Cannot move from {room['status']} to {request.target_status} without override",
                })
                continue

            is_override = request.override and room["status"] != request.target_status
            cursor.execute(
                "UPDATE rooms SET status = %s, last_status_change = %s, override_flag = %s WHERE id = %s",
                (request.target_status, now, 1 if is_override else 0, room_id),
            )
            cursor.execute(
                """
                INSERT INTO cleaning_batch_rooms
                    (batch_id, room_id, status_from, status_to, transition_time, override_flag, override_reason)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    batch_id, room_id, room["status"], request.target_status, now,
                    1 if is_override else 0,
                    request.override_reason if is_override else None,
                ),
            )
            log_audit(conn, staff_id, "OVERRIDE" if is_override else "STATUS_CHANGE", "room", room_id,
                      old_value={"status": room["status"]},
                      new_value={
                          "status": request.target_status,
                          "batch_id": batch_id,
                          "override_reason": request.override_reason if is_override else None,
                      })

            results.append({
                "room_id": room_id,
                "room_number": room["number"],
                "previous_status": room["status"],
                "new_status": request.target_status,
                "success": True,
                "override": is_override,
            })
            emitted.append((events.ROOM_STATUS_CHANGED, {
                "room_id": room_id,
                "room_number": room["number"],
                "previous_status": room["status"],
                "status": request.target_status,
                "override": is_override,
            }))

        success_count = sum(1 for r in results if r["success"])
        if success_count == len(room_ids):
            cursor.execute(
                "UPDATE cleaning_batches SET completed_at = %s WHERE id = %s",
                (now, batch_id),
            )
        conn.commit()

        if emitted:
            emitted.append((events.INVENTORY_UPDATED, {"reason": "CLEANING_BATCH", "batch_id": batch_id}))
            publish(emitted)

        logger.info(
            "Cleaning batch %s by staff %s: %d/%d rooms -> %s",
            batch_id, staff_id, success_count, len(room_ids), request.target_status,
        )

        body = {
            "success": success_count > 0,
            "message": "Cleaning batch processed",
            "data": {
                "batch_id": batch_id,
                "summary": {
                    "total": len(room_ids),
                    "success": success_count,
                    "failed": len(room_ids) - success_count,
                },
                "rooms": results,
            },
        }
        return JSONResponse(
            status_code=status.HTTP_200_OK if success_count > 0 else status.HTTP_400_BAD_REQUEST,
            content=body,
        )

    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error processing cleaning batch: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CLEANING_BATCH_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/batches")
def list_cleaning_batches(
    limit: int = Query(20, ge=1, le=100),
    staff_id: Optional[int] = Query(None),
    auth: dict = Depends(verify_bearer_token),
):
    """Recent cleaning batches with their rooms"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        where_sql = ""
        params = []
        if staff_id:
            where_sql = " WHERE cb.staff_id = %s"
            params.append(staff_id)

        cursor.execute(
            f"""
            SELECT cb.id, cb.staff_id, s.name as staff_name, cb.started_at,
                   cb.completed_at, cb.room_count
            FROM cleaning_batches cb
            LEFT JOIN staff s ON cb.staff_id = s.id
            {where_sql}
            ORDER BY cb.started_at DESC
            LIMIT %s
            """,
            params + [limit],
        )
        batches = cursor.fetchall()

        if batches:
            ids = [b["id"] for b in batches]
            placeholders = ", ".join(["%s"] * len(ids))
            cursor.execute(
                f"""
                SELECT cbr.batch_id, cbr.room_id, r.number as room_number, cbr.status_from,
                       cbr.status_to, cbr.transition_time, cbr.override_flag, cbr.override_reason
                FROM cleaning_batch_rooms cbr
                JOIN rooms r ON cbr.room_id = r.id
                WHERE cbr.batch_id IN ({placeholders})
                ORDER BY cbr.id
                """,
                ids,
            )
            by_batch = {}
            for row in cursor.fetchall():
                by_batch.setdefault(row.pop("batch_id"), []).append(row)
            for batch in batches:
                batch["rooms"] = by_batch.get(batch["id"], [])

        return {"success": True, "data": batches}

    except Exception as e:
        logger.error(f"Error listing cleaning batches: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LIST_CLEANING_BATCHES_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
