import logging
from datetime import datetime, timedelta

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_HOURS
from app.db import get_db_connection

logger = logging.getLogger(__name__)

ROLE_ADMIN = "ADMIN"

security = HTTPBearer()


def verify_bearer_token(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Verify JWT Bearer token from Authorization header.
    Role and active flag are read REAL-TIME from the staff table, not from the token.

    Returns staff context dict with: staff_id, name, role, token_version
    """
    token = credentials.credentials

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

        if payload.get("type") != "access":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "error_code": "INVALID_TOKEN_TYPE",
                    "message": "Invalid token",
                },
            )

        staff_id = payload.get("staff_id")
        token_version = payload.get("token_version")

        # token_version is bumped on login/logout/deactivation
        conn = get_db_connection()
        cursor = conn.cursor(dictionary=True)

        try:
            cursor.execute(
                "SELECT id, name, role, active, token_version FROM staff WHERE id = %s",
                (staff_id,),
            )
            staff = cursor.fetchone()
        finally:
            cursor.close()
            conn.close()

        if not staff:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "error_code": "STAFF_NOT_FOUND",
                    "message": "Staff member not found",
                },
            )

        if not staff["active"]:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "error_code": "STAFF_INACTIVE",
                    "message": "Staff account is inactive",
                },
            )

        if staff["token_version"] != token_version:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "error_code": "TOKEN_REVOKED",
                    "message": "Session has ended. Please sign in again.",
                },
            )

        return {
            "staff_id": staff["id"],
            "name": staff["name"],
            "role": staff["role"],
            "token_version": token_version,
        }

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_code": "TOKEN_EXPIRED",
                "message": "Session expired. Please sign in again.",
            },
        )
    except jwt.InvalidTokenError as e:
        logger.error(f"Invalid token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_code": "INVALID_TOKEN",
                "message": "Invalid token",
            },
        )


def create_access_token(data: dict, expires_hours: int = ACCESS_TOKEN_EXPIRE_HOURS) -> str:
    """
    Create JWT access token for a staff member.

    Args:
        data: dict containing staff_id, name, role, token_version
        expires_hours: token expiration time in hours

    Returns:
        JWT token string
    """
    to_encode = {
        "staff_id": data.get("staff_id"),
        "name": data.get("name"),
        "role": data.get("role"),
        "token_version": data.get("token_version"),
    }

    expire = datetime.utcnow() + timedelta(hours=expires_hours)
    to_encode.update({
        "exp": expire,
        "type": "access",
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def check_admin(auth: dict) -> None:
    """
    Raise 403 unless the authenticated staff member is an ADMIN.

    Usage:
        @router.get("/")
        def list_items(auth: dict = Depends(verify_bearer_token)):
            check_admin(auth)
    """
    if auth.get("role") == ROLE_ADMIN:
        return None

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error_code": "PERMISSION_DENIED",
            "message": "Admin access required",
        },
    )


def require_admin(auth: dict = Depends(verify_bearer_token)) -> dict:
    """Dependency form of check_admin; returns the auth context."""
    check_admin(auth)
    return auth
