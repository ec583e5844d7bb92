"""
Check-in block lengths and the maximum stay.
"""
from datetime import datetime, timedelta
from typing import List

INITIAL = "INITIAL"
RENEWAL = "RENEWAL"
FINAL2H = "FINAL2H"

BLOCK_HOURS = {INITIAL: 6, RENEWAL: 6, FINAL2H: 2}

MAX_STAY_HOURS = 14
FINAL_EXTENSION_REQUIRED_HOURS = 12
FINAL_EXTENSION_PRICE = 20


def block_hours(block: dict) -> float:
    return (block["ends_at"] - block["starts_at"]).total_seconds() / 3600


def total_hours(blocks: List[dict]) -> float:
    return sum(block_hours(b) for b in blocks)


def can_renew(current_hours: float, hours: int) -> bool:
    return current_hours + hours <= MAX_STAY_HOURS


def can_final_extend(blocks: List[dict]) -> bool:
    """The 2 hour final extension is only sold after exactly two 6 hour blocks."""
    return len(blocks) == 2 and abs(total_hours(blocks) - FINAL_EXTENSION_REQUIRED_HOURS) < 1e-6


def next_block_window(blocks: List[dict], block_type: str, now: datetime):
    """New blocks start where the latest one ends (or now for the first block)."""
    starts_at = max((b["ends_at"] for b in blocks), default=now)
    return starts_at, starts_at + timedelta(hours=BLOCK_HOURS[block_type])
