import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Header

from config import settings
from database import now_utc
from errors import ApiError

logger = logging.getLogger(__name__)


# -----------------------------
# Passwords
# -----------------------------
def hash_password(pw: str) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt(rounds=10)).decode()


def verify_password(pw: Optional[str], hashed: Optional[str]) -> bool:
    if not pw or not hashed:
        return False
    try:
        return bcrypt.checkpw(pw.encode(), hashed.encode())
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


# -----------------------------
# Tokens
# -----------------------------
def _encode(claims: Dict[str, Any], lifetime: timedelta) -> str:
    payload = {**claims, "exp": now_utc() + lifetime}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_access_token(user_id: str, email: str) -> str:
    return _encode(
        {"userId": str(user_id), "email": email},
        timedelta(hours=settings.ACCESS_TOKEN_EXPIRE_HOURS),
    )


def create_reset_token(user_id: str) -> str:
    return _encode(
        {"userId": str(user_id), "purpose": "reset"},
        timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES),
    )


def decode_token(token: str) -> Dict[str, Any]:
    """Raises jwt.PyJWTError when the signature or expiry is bad."""
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


# -----------------------------
# Request auth
# -----------------------------
@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    email: Optional[str] = None


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise ApiError(401, "No token provided")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise ApiError(401, "No token provided")
    try:
        claims = decode_token(token)
    except jwt.PyJWTError as e:
        logger.info("JWT verification failed: %s", e)
        raise ApiError(403, "Invalid or expired token")
    if claims.get("purpose") == "reset" or not claims.get("userId"):
        raise ApiError(403, "Invalid or expired token")
    return CurrentUser(user_id=claims["userId"], email=claims.get("email"))
