"""
Room/locker numbering, tier lookup and availability math.
"""
from typing import Dict, List, Optional, Tuple

from app.utils.pricing import LOCKER, STANDARD, DOUBLE, SPECIAL, GYM_LOCKER, ROOM_TIERS

NONEXISTENT_ROOMS = {247, 249, 251, 253, 255, 257, 259, 261}
ROOM_NUMBERS = [n for n in range(200, 263) if n not in NONEXISTENT_ROOMS]

DOUBLE_ROOMS = {216, 218, 225, 252, 262}
SPECIAL_ROOMS = {201, 232, 256}

LOCKER_COUNT = 108
LOCKER_NUMBERS = [f"{n:03d}" for n in range(1, LOCKER_COUNT + 1)]


def is_existing_room(number) -> bool:
    try:
        return int(number) in ROOM_NUMBERS
    except (TypeError, ValueError):
        return False


def get_room_tier(number) -> str:
    """Tier is fixed by room number; unknown numbers count as STANDARD."""
    n = int(number)
    if n in SPECIAL_ROOMS:
        return SPECIAL
    if n in DOUBLE_ROOMS:
        return DOUBLE
    return STANDARD


def parse_eligible_ranges(raw: Optional[str]) -> List[Tuple[int, int]]:
    """Parse "1000-1999,5000-5999" into inclusive (low, high) pairs; bad parts are skipped."""
    ranges = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        low, sep, high = part.partition("-")
        try:
            low_n = int(low)
            high_n = int(high) if sep else low_n
        except ValueError:
            continue
        if low_n <= high_n:
            ranges.append((low_n, high_n))
    return ranges


def is_gym_locker_eligible(membership_number: Optional[str], ranges: List[Tuple[int, int]]) -> bool:
    if not membership_number or not str(membership_number).strip().isdigit():
        return False
    n = int(str(membership_number).strip())
    return any(low <= n <= high for low, high in ranges)


def allowed_rentals(membership_number: Optional[str], ranges: List[Tuple[int, int]]) -> List[str]:
    rentals = [LOCKER, STANDARD, DOUBLE, SPECIAL]
    if is_gym_locker_eligible(membership_number, ranges):
        rentals.append(GYM_LOCKER)
    return rentals


def compute_available(supply: Dict[str, int], demand: Dict[str, int]) -> Dict[str, int]:
    """
    Units a new customer could take right now: clean unheld supply minus
    the waitlist entries already queued for the same tier.
    """
    tiers = list(ROOM_TIERS) + [LOCKER]
    return {
        tier: max(0, int(supply.get(tier, 0)) - int(demand.get(tier, 0)))
        for tier in tiers
    }
