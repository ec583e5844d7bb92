"""
Pricing rules for check-ins, renewals and upgrades.

All amounts are whole dollars. Times are local club time.
"""
from datetime import datetime, date, time
from typing import Optional, List, Dict, Tuple

LOCKER = "LOCKER"
STANDARD = "STANDARD"
DOUBLE = "DOUBLE"
SPECIAL = "SPECIAL"
GYM_LOCKER = "GYM_LOCKER"

RENTAL_TYPES = (LOCKER, STANDARD, DOUBLE, SPECIAL, GYM_LOCKER)
ROOM_TIERS = (STANDARD, DOUBLE, SPECIAL)

# Tier rank used to decide whether a waitlist request is an upgrade
TIER_RANK = {GYM_LOCKER: 0, LOCKER: 0, STANDARD: 1, DOUBLE: 2, SPECIAL: 3}

ROOM_PRICES = {
    # tier: (base, weekday window)
    STANDARD: (30, 27),
    DOUBLE: (40, 37),
    SPECIAL: (50, 47),
}
YOUTH_ROOM_PRICES = {STANDARD: 30, DOUBLE: 50, SPECIAL: 50}
ROOM_LABELS = {STANDARD: "Standard Room", DOUBLE: "Double Room", SPECIAL: "Special Room"}

LOCKER_WINDOW_PRICE = 16
LOCKER_WEEKEND_PRICE = 24
LOCKER_WEEKNIGHT_PRICE = 19
YOUTH_LOCKER_PRICE = 7

MEMBERSHIP_FEE = 13
SIX_MONTH_MEMBERSHIP_PRICE = 43
RENEWAL_2H_PRICE = 20

SIX_MONTH = "SIX_MONTH"

UPGRADE_FEES = {
    LOCKER: {STANDARD: 8, DOUBLE: 17, SPECIAL: 27},
    STANDARD: {DOUBLE: 9, SPECIAL: 19},
    DOUBLE: {SPECIAL: 9},
}

MESSAGES = ["No refunds"]


def is_weekday_discount_window(moment: datetime) -> bool:
    """Monday 8:00 through Friday 16:00, with 16:00 itself included."""
    if moment.weekday() > 4:
        return False
    if 8 <= moment.hour < 16:
        return True
    return moment.hour == 16 and moment.minute == 0


def is_youth(age: Optional[int]) -> bool:
    return age is not None and 18 <= age <= 24


def age_on(dob: Optional[date], on: date) -> Optional[int]:
    if not dob:
        return None
    years = on.year - dob.year
    if (on.month, on.day) < (dob.month, dob.day):
        years -= 1
    return years


def has_valid_six_month_membership(
    now: datetime,
    card_type: Optional[str],
    valid_until: Optional[date],
) -> bool:
    if card_type != SIX_MONTH or not valid_until:
        return False
    # valid through the end of the expiry day
    return now <= datetime.combine(valid_until, time.max)


def locker_price(rental_type: str, check_in: datetime, youth: bool) -> int:
    if rental_type == GYM_LOCKER:
        return 0

    window = is_weekday_discount_window(check_in)
    if youth:
        return 0 if window else YOUTH_LOCKER_PRICE

    if window:
        return LOCKER_WINDOW_PRICE

    day = check_in.weekday()  # Monday == 0
    if day in (5, 6):
        return LOCKER_WEEKEND_PRICE
    if day == 4 and check_in.hour >= 16:
        return LOCKER_WEEKEND_PRICE
    if day == 0 and check_in.hour < 8:
        return LOCKER_WEEKEND_PRICE
    return LOCKER_WEEKNIGHT_PRICE


def room_price(rental_type: str, check_in: datetime, youth: bool) -> int:
    if youth:
        return YOUTH_ROOM_PRICES.get(rental_type, 0)
    base, discounted = ROOM_PRICES.get(rental_type, (0, 0))
    return discounted if is_weekday_discount_window(check_in) else base


def membership_fee(
    check_in: datetime,
    age: Optional[int],
    card_type: Optional[str],
    valid_until: Optional[date],
) -> int:
    if age is not None and age < 25:
        return 0
    if has_valid_six_month_membership(check_in, card_type, valid_until):
        return 0
    return MEMBERSHIP_FEE


def _membership_lines(
    check_in: datetime,
    age: Optional[int],
    card_type: Optional[str],
    valid_until: Optional[date],
    include_six_month_purchase: bool,
) -> Tuple[int, int, List[Dict]]:
    lines = []
    daily = 0 if include_six_month_purchase else membership_fee(check_in, age, card_type, valid_until)
    purchase = SIX_MONTH_MEMBERSHIP_PRICE if include_six_month_purchase else 0

    if daily > 0:
        lines.append({"description": "Membership Fee", "amount": daily})
    if purchase > 0:
        lines.append({"description": "6 Month Membership", "amount": purchase})
    return daily, purchase, lines


def calculate_quote(
    rental_type: str,
    check_in: datetime,
    age: Optional[int] = None,
    card_type: Optional[str] = None,
    valid_until: Optional[date] = None,
    include_six_month_purchase: bool = False,
) -> dict:
    """
    Price a check-in.

    Returns rental_fee, membership_fee, total, line_items and messages.
    """
    if rental_type not in RENTAL_TYPES:
        raise ValueError(f"Unknown rental type: {rental_type}")

    youth = is_youth(age)
    line_items = []

    if rental_type in (LOCKER, GYM_LOCKER):
        rental_fee = locker_price(rental_type, check_in, youth)
        if rental_fee > 0:
            line_items.append({
                "description": "Gym Locker" if rental_type == GYM_LOCKER else "Locker",
                "amount": rental_fee,
            })
        elif rental_type == GYM_LOCKER:
            line_items.append({"description": "Gym Locker (no cost)", "amount": 0})
    else:
        rental_fee = room_price(rental_type, check_in, youth)
        line_items.append({"description": ROOM_LABELS[rental_type], "amount": rental_fee})

    daily, purchase, lines = _membership_lines(
        check_in, age, card_type, valid_until, include_six_month_purchase
    )
    line_items.extend(lines)

    return {
        "rental_fee": rental_fee,
        "membership_fee": daily,
        "total": rental_fee + daily + purchase,
        "line_items": line_items,
        "messages": list(MESSAGES),
    }


def calculate_renewal_quote(
    rental_type: str,
    check_in: datetime,
    renewal_hours: Optional[int] = 6,
    age: Optional[int] = None,
    card_type: Optional[str] = None,
    valid_until: Optional[date] = None,
    include_six_month_purchase: bool = False,
) -> dict:
    """2 hour renewals are a flat fee; 6 hour renewals are priced like a new check-in."""
    if (renewal_hours or 6) == 6:
        return calculate_quote(
            rental_type, check_in, age, card_type, valid_until, include_six_month_purchase
        )

    line_items = [{"description": "Renewal (2 Hours)", "amount": RENEWAL_2H_PRICE}]
    daily, purchase, lines = _membership_lines(
        check_in, age, card_type, valid_until, include_six_month_purchase
    )
    line_items.extend(lines)

    return {
        "rental_fee": RENEWAL_2H_PRICE,
        "membership_fee": daily,
        "total": RENEWAL_2H_PRICE + daily + purchase,
        "line_items": line_items,
        "messages": list(MESSAGES),
    }


def get_upgrade_fee(from_tier: str, to_tier: str) -> Optional[int]:
    return UPGRADE_FEES.get(from_tier, {}).get(to_tier)


def is_upgrade(from_tier: str, to_tier: str) -> bool:
    return TIER_RANK.get(to_tier, -1) > TIER_RANK.get(from_tier, -1)
