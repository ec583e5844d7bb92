import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.middleware import create_access_token, verify_bearer_token
from app.utils.helpers import verify_pin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

# Constants
MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION_MINUTES = 30


# ============== Request Models ==============

class LoginRequest(BaseModel):
    pin: str = Field(..., min_length=4, max_length=12, pattern=r"^\d+$")
    staff_id: Optional[int] = None


# ============== Helpers ==============

def _register_failed_attempt(conn, cursor, staff: dict):
    failed_attempts = (staff["failed_login_attempts"] or 0) + 1

    if failed_attempts >= MAX_LOGIN_ATTEMPTS:
        locked_until = datetime.now() + timedelta(minutes=LOCKOUT_DURATION_MINUTES)
        cursor.execute(
            "UPDATE staff SET failed_login_attempts = %s, locked_until = %s WHERE id = %s",
            (failed_attempts, locked_until, staff["id"]),
        )
        conn.commit()
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail={
                "error_code": "ACCOUNT_LOCKED",
                "message": f"Too many failed attempts. Locked for {LOCKOUT_DURATION_MINUTES} minutes.",
            },
        )

    cursor.execute(
        "UPDATE staff SET failed_login_attempts = %s WHERE id = %s",
        (failed_attempts, staff["id"]),
    )
    conn.commit()
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error_code": "INVALID_CREDENTIALS",
            "message": f"Invalid PIN. Attempts left: {MAX_LOGIN_ATTEMPTS - failed_attempts}",
        },
    )


# ============== Endpoints ==============

@router.post("/login")
def login(request: LoginRequest):
    """
    Sign in with a PIN.
    With staff_id the PIN is checked against that staff member only, otherwise
    every active staff member's PIN hash is tried.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        if request.staff_id is not None:
            cursor.execute(
                """
                SELECT id, name, role, pin_hash, active, token_version,
                       failed_login_attempts, locked_until
                FROM staff WHERE id = %s
                """,
                (request.staff_id,),
            )
            staff = cursor.fetchone()

            if not staff or not staff["active"]:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail={"error_code": "INVALID_CREDENTIALS", "message": "Invalid staff or PIN"},
                )

            if staff["locked_until"] and datetime.now() < staff["locked_until"]:
                remaining_minutes = int((staff["locked_until"] - datetime.now()).total_seconds() / 60)
                raise HTTPException(
                    status_code=status.HTTP_423_LOCKED,
                    detail={
                        "error_code": "ACCOUNT_LOCKED",
                        "message": f"Account locked. Try again in {remaining_minutes} minutes.",
                    },
                )

            if not verify_pin(request.pin, staff["pin_hash"]):
                _register_failed_attempt(conn, cursor, staff)
        else:
            cursor.execute(
                """
                SELECT id, name, role, pin_hash, active, token_version,
                       failed_login_attempts, locked_until
                FROM staff WHERE active = 1
                """
            )
            staff = None
            for candidate in cursor.fetchall():
                if candidate["locked_until"] and datetime.now() < candidate["locked_until"]:
                    continue
                if verify_pin(request.pin, candidate["pin_hash"]):
                    staff = candidate
                    break

            if not staff:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail={"error_code": "INVALID_CREDENTIALS", "message": "Invalid PIN"},
                )

        new_token_version = (staff["token_version"] or 0) + 1
        cursor.execute(
            """
            UPDATE staff
            SET failed_login_attempts = 0, locked_until = NULL, token_version = %s
            WHERE id = %s
            """,
            (new_token_version, staff["id"]),
        )
        conn.commit()

        access_token = create_access_token({
            "staff_id": staff["id"],
            "name": staff["name"],
            "role": staff["role"],
            "token_version": new_token_version,
        })

        logger.info("Staff %s signed in", staff["id"])

        return {
            "success": True,
            "message": "Signed in",
            "data": {
                "access_token": access_token,
                "token_type": "bearer",
                "staff": {"id": staff["id"], "name": staff["name"], "role": staff["role"]},
            },
        }

    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error during login: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LOGIN_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/logout")
def logout(auth: dict = Depends(verify_bearer_token)):
    """
    Sign out by incrementing token_version (invalidates every issued token).
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "UPDATE staff SET token_version = token_version + 1 WHERE id = %s",
            (auth["staff_id"],),
        )
        conn.commit()

        return {"success": True, "message": "Signed out"}

    except Exception as e:
        conn.rollback()
        logger.error(f"Error during logout: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LOGOUT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/me")
def get_me(auth: dict = Depends(verify_bearer_token)):
    """Current staff member"""
    return {
        "success": True,
        "data": {
            "id": auth["staff_id"],
            "name": auth["name"],
            "role": auth["role"],
        },
    }
