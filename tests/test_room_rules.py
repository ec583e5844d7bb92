from datetime import datetime, timedelta

from app.utils.inventory import (
    ROOM_NUMBERS,
    allowed_rentals,
    compute_available,
    get_room_tier,
    is_existing_room,
    is_gym_locker_eligible,
    parse_eligible_ranges,
)
from app.utils.room_status import validate_transition
from app.utils.stays import (
    FINAL2H,
    INITIAL,
    can_final_extend,
    can_renew,
    next_block_window,
    total_hours,
)

NOW = datetime(2024, 1, 8, 12, 0)


def _block(start_offset_hours, hours):
    starts_at = NOW + timedelta(hours=start_offset_hours)
    return {"starts_at": starts_at, "ends_at": starts_at + timedelta(hours=hours)}


# ============== Room status ==============

def test_adjacent_transition_allowed():
    assert validate_transition("DIRTY", "CLEANING") == {"ok": True, "needs_override": False}
    assert validate_transition("CLEAN", "CLEAN")["ok"]


def test_skip_needs_override():
    assert validate_transition("DIRTY", "CLEAN") == {"ok": False, "needs_override": True}
    assert validate_transition("DIRTY", "CLEAN", override=True)["ok"]


def test_unknown_status_rejected_without_hint():
    assert validate_transition("DIRTY", "BROKEN", override=True) == {"ok": False, "needs_override": False}


# ============== Inventory ==============

def test_room_numbering():
    assert 247 not in ROOM_NUMBERS
    assert len(ROOM_NUMBERS) == 55
    assert is_existing_room("200")
    assert not is_existing_room("abc")


def test_room_tiers():
    assert get_room_tier(216) == "DOUBLE"
    assert get_room_tier("201") == "SPECIAL"
    assert get_room_tier(200) == "STANDARD"


def test_gym_locker_eligibility():
    ranges = parse_eligible_ranges("1000-1999, 5000, bad, 9-3")
    assert ranges == [(1000, 1999), (5000, 5000)]
    assert is_gym_locker_eligible("1500", ranges)
    assert not is_gym_locker_eligible("A15", ranges)
    assert "GYM_LOCKER" in allowed_rentals("5000", ranges)
    assert "GYM_LOCKER" not in allowed_rentals(None, ranges)


def test_available_subtracts_waitlist_demand():
    available = compute_available({"STANDARD": 3, "LOCKER": 5}, {"STANDARD": 5})
    assert available == {"STANDARD": 0, "DOUBLE": 0, "SPECIAL": 0, "LOCKER": 5}


# ============== Stays ==============

def test_renewal_cap():
    assert can_renew(8, 6)
    assert not can_renew(12, 6)


def test_final_extension_needs_two_six_hour_blocks():
    assert can_final_extend([_block(-12, 6), _block(-6, 6)])
    assert not can_final_extend([_block(-12, 12)])
    assert not can_final_extend([_block(-6, 6)])


def test_next_block_starts_at_latest_end():
    assert next_block_window([], INITIAL, NOW) == (NOW, NOW + timedelta(hours=6))

    blocks = [_block(-12, 6), _block(-6, 6)]
    starts_at, ends_at = next_block_window(blocks, FINAL2H, NOW)
    assert starts_at == NOW
    assert ends_at - starts_at == timedelta(hours=2)
    assert total_hours(blocks) == 12
