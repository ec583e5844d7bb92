"""
Checkout timing, late fees and the system late-fee note kept on a customer.
"""
from datetime import datetime, date
from typing import Optional, Tuple

LATE_FEE_NOTE_PREFIX = "[SYSTEM_LATE_FEE_PENDING]"

# (minimum late minutes, fee, ban) checked from the top
LATE_FEE_TIERS = (
    (90, 35.0, True),
    (60, 35.0, False),
    (30, 15.0, False),
)

LATE_EVENT_THRESHOLD_MINUTES = 30


def compute_late_minutes(ends_at: datetime, now: datetime) -> int:
    """Whole minutes past the scheduled end, never negative."""
    seconds = (now - ends_at).total_seconds()
    return max(0, int(seconds // 60))


def calculate_late_fee(late_minutes: int) -> Tuple[float, bool]:
    """
    Returns (fee, ban_applied).

    Under 30 minutes late is free, 30-59 costs $15, 60-89 costs $35 and
    90 or more costs $35 plus a ban.
    """
    for threshold, fee, ban in LATE_FEE_TIERS:
        if late_minutes >= threshold:
            return fee, ban
    return 0.0, False


def round_down_to_15(minutes) -> int:
    try:
        safe = max(0, int(minutes))
    except (TypeError, ValueError):
        safe = 0
    return (safe // 15) * 15


def format_rounded_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} {'minute' if minutes == 1 else 'minutes'}"
    return f"{minutes // 60}h {minutes % 60}m"


def checkout_delta(now: datetime, expected: datetime) -> dict:
    """
    Time remaining until (or elapsed since) the scheduled checkout, rounded
    down to 15 minute steps for display.
    """
    if now <= expected:
        status = "remaining"
        raw = (expected - now).total_seconds() / 60
    else:
        status = "late"
        raw = (now - expected).total_seconds() / 60

    rounded = round_down_to_15(raw)
    return {
        "status": status,
        "minutes": rounded,
        "hours": rounded // 60,
        "minutes_part": rounded % 60,
    }


def build_late_fee_note(late_minutes: int, visit_date: date, fee_amount: float) -> str:
    dur = format_rounded_duration(round_down_to_15(late_minutes))
    return (
        f"{LATE_FEE_NOTE_PREFIX} Late fee (${fee_amount:.2f}): "
        f"customer was {dur} late on last visit on {visit_date.strftime('%Y-%m-%d')}."
    )


def strip_late_fee_notes(notes: Optional[str]) -> Optional[str]:
    if not isinstance(notes, str) or not notes.strip():
        return None

    kept = "\n".join(
        line for line in notes.split("\n") if not line.startswith(LATE_FEE_NOTE_PREFIX)
    ).strip()
    return kept or None


def append_note(notes: Optional[str], line: str) -> str:
    if not notes:
        return line
    return f"{notes}\n{line}"
