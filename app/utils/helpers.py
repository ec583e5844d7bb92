import math
import random
import string
import bcrypt


def hash_pin(pin: str) -> str:
    """
    Hash a staff PIN using bcrypt.
    Handles bcrypt's 72-byte limit by truncating if necessary.
    """
    pin_bytes = pin.encode("utf-8")[:72]
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(pin_bytes, salt).decode("utf-8")


def verify_pin(plain_pin: str, hashed_pin: str) -> bool:
    """
    Verify a PIN against a bcrypt hash.
    """
    if not hashed_pin:
        return False
    pin_bytes = plain_pin.encode("utf-8")[:72]
    return bcrypt.checkpw(pin_bytes, hashed_pin.encode("utf-8"))


def generate_pin(length: int = 6) -> str:
    """Generate a random numeric PIN."""
    return "".join(random.choices(string.digits, k=length))


def paginate(page: int, limit: int, total: int) -> dict:
    """Pagination block shared by list endpoints."""
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def to_money(value) -> float:
    """DECIMAL columns come back as Decimal; JSON responses use floats."""
    if value is None:
        return 0.0
    return round(float(value), 2)
