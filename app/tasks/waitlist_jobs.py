"""
Waitlist background jobs:
  1. Upgrade hold tick: expire lapsed offers, then hold free rooms for the
     next customer waiting on that tier
  2. Expire waitlist entries whose stay has ended
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.config import UPGRADE_HOLD_MINUTES
from app.db import get_db_connection
from app.utils import broadcaster as events
from app.utils.broadcaster import publish
from app.utils.occupancy import release_hold

logger = logging.getLogger(__name__)

EXPIRE_BATCH = 25
OFFER_BATCH = 10


# ─────────────────────────────────────────────
# 1. UPGRADE HOLD TICK
# ─────────────────────────────────────────────
def job_upgrade_hold_tick(now: Optional[datetime] = None) -> dict:
    """
    OFFERED entries past their hold go back to ACTIVE. Then every CLEAN,
    unassigned, unreserved room is held for the longest-waiting ACTIVE
    entry of its tier.
    """
    now = now or datetime.now()
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)
    emitted = []
    expired = offered = 0

    try:
        cursor.execute(
            """
            SELECT id, room_id FROM waitlist
            WHERE status = 'OFFERED' AND offer_expires_at <= %s
            ORDER BY offer_expires_at
            LIMIT %s
            FOR UPDATE SKIP LOCKED
            """,
            (now, EXPIRE_BATCH),
        )
        for entry in cursor.fetchall():
            cursor.execute(
                """
                UPDATE waitlist
                SET status = 'ACTIVE', room_id = NULL, offer_expires_at = NULL, last_offered_at = %s
                WHERE id = %s
                """,
                (now, entry["id"]),
            )
            release_hold(cursor, entry["id"], "EXPIRED", now)
            expired += 1
            emitted.append((events.UPGRADE_OFFER_EXPIRED, {"waitlist_id": entry["id"], "room_id": entry["room_id"]}))
            emitted.append((events.WAITLIST_UPDATED, {"waitlist_id": entry["id"], "status": "ACTIVE"}))

        cursor.execute(
            """
            SELECT r.id, r.number, r.type FROM rooms r
            WHERE r.status = 'CLEAN'
              AND r.assigned_to_customer_id IS NULL
              AND NOT EXISTS (
                  SELECT 1 FROM inventory_reservations ir
                  WHERE ir.resource_type = 'room' AND ir.resource_id = r.id AND ir.released_at IS NULL
              )
              AND NOT EXISTS (
                  SELECT 1 FROM waitlist w WHERE w.room_id = r.id AND w.status = 'OFFERED'
              )
            ORDER BY r.last_status_change
            LIMIT %s
            FOR UPDATE SKIP LOCKED
            """,
            (OFFER_BATCH,),
        )
        rooms = cursor.fetchall()

        hold_until = now + timedelta(minutes=UPGRADE_HOLD_MINUTES)
        for room in rooms:
            # NULL last_offered_at sorts first: never-offered entries go ahead
            cursor.execute(
                """
                SELECT w.id FROM waitlist w
                JOIN visits v ON w.visit_id = v.id
                JOIN checkin_blocks cb ON w.checkin_block_id = cb.id
                WHERE w.status = 'ACTIVE' AND w.desired_tier = %s
                  AND v.ended_at IS NULL AND cb.ends_at > %s
                ORDER BY w.last_offered_at, w.created_at
                LIMIT 1
                FOR UPDATE SKIP LOCKED
                """,
                (room["type"], now),
            )
            entry = cursor.fetchone()
            if not entry:
                continue

            cursor.execute(
                """
                UPDATE waitlist
                SET status = 'OFFERED', room_id = %s, offered_at = %s, offer_expires_at = %s,
                    last_offered_at = %s, offer_attempts = offer_attempts + 1
                WHERE id = %s
                """,
                (room["id"], now, hold_until, now, entry["id"]),
            )
            cursor.execute(
                """
                INSERT INTO inventory_reservations (resource_type, resource_id, kind, waitlist_id, expires_at)
                VALUES ('room', %s, 'UPGRADE_HOLD', %s, %s)
                """,
                (room["id"], entry["id"], hold_until),
            )
            offered += 1
            emitted.append((events.UPGRADE_HOLD_AVAILABLE, {
                "waitlist_id": entry["id"],
                "room_id": room["id"],
                "room_number": room["number"],
                "tier": room["type"],
                "expires_at": hold_until,
            }))
            emitted.append((events.WAITLIST_UPDATED, {"waitlist_id": entry["id"], "status": "OFFERED"}))

        conn.commit()
        publish(emitted)

        if expired or offered:
            logger.info("Upgrade hold tick: %d offers expired, %d rooms held", expired, offered)

    except Exception as e:
        conn.rollback()
        logger.error("Error in job_upgrade_hold_tick: %s", e, exc_info=True)
    finally:
        cursor.close()
        conn.close()

    return {"expired": expired, "offered": offered}


# ─────────────────────────────────────────────
# 2. EXPIRE WAITLIST ENTRIES OF ENDED STAYS
# ─────────────────────────────────────────────
def job_expire_waitlist(now: Optional[datetime] = None) -> int:
    """ACTIVE/OFFERED entries whose block or visit has ended become EXPIRED."""
    now = now or datetime.now()
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)
    count = 0

    try:
        cursor.execute(
            """
            SELECT w.id FROM waitlist w
            JOIN visits v ON w.visit_id = v.id
            JOIN checkin_blocks cb ON w.checkin_block_id = cb.id
            WHERE w.status IN ('ACTIVE', 'OFFERED')
              AND (v.ended_at IS NOT NULL OR cb.ends_at <= %s)
            FOR UPDATE SKIP LOCKED
            """,
            (now,),
        )
        entries = cursor.fetchall()

        emitted = []
        for entry in entries:
            cursor.execute(
                "UPDATE waitlist SET status = 'EXPIRED', room_id = NULL, offer_expires_at = NULL WHERE id = %s",
                (entry["id"],),
            )
            release_hold(cursor, entry["id"], "EXPIRED", now)
            emitted.append((events.WAITLIST_UPDATED, {"waitlist_id": entry["id"], "status": "EXPIRED"}))
            count += 1

        conn.commit()
        publish(emitted)

        if count:
            logger.info("Waitlist expiry job done: %d entries expired", count)

    except Exception as e:
        conn.rollback()
        logger.error("Error in job_expire_waitlist: %s", e, exc_info=True)
    finally:
        cursor.close()
        conn.close()

    return count
