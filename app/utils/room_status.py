"""
Room status transitions.

A room cycles DIRTY -> CLEANING -> CLEAN -> OCCUPIED -> DIRTY. Staff may move a
room one step along the allowed edges below; anything else needs an explicit
override (with a reason recorded by the caller).
"""

DIRTY = "DIRTY"
CLEANING = "CLEANING"
CLEAN = "CLEAN"
OCCUPIED = "OCCUPIED"

ROOM_STATUSES = (DIRTY, CLEANING, CLEAN, OCCUPIED)

ALLOWED_TRANSITIONS = {
    DIRTY: {CLEANING, OCCUPIED},
    CLEANING: {DIRTY, CLEAN},
    CLEAN: {CLEANING, DIRTY, OCCUPIED},
    OCCUPIED: {CLEAN, DIRTY},
}


def is_adjacent(from_status: str, to_status: str) -> bool:
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def validate_transition(from_status: str, to_status: str, override: bool = False) -> dict:
    """
    Check a room status change.

    Returns {"ok": True} when the move is allowed, otherwise
    {"ok": False, "needs_override": True}. Unknown statuses are rejected
    without the override hint.
    """
    if to_status not in ROOM_STATUSES or from_status not in ROOM_STATUSES:
        return {"ok": False, "needs_override": False}

    if is_adjacent(from_status, to_status) or override:
        return {"ok": True, "needs_override": False}

    return {"ok": False, "needs_override": True}
