"""
Login and access-token handling.

Tokens are HS256 JWTs carrying ``sub`` (user id), ``email``, ``exp``, ``iat`` and
``type="access"``. Every credential failure is reported the same way.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import bcrypt
from jose import JWTError, jwt

from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.error_handling import Unauthenticated

logger = get_logger(prefix="[Auth Service Login]")

INVALID_CREDENTIALS_MSG = "Invalid email or password"
INVALID_TOKEN_MSG = "Could not validate credentials"


def _secret_key() -> str:
    secret_key = settings.SECRET_KEY.get_secret_value()
    if not secret_key:
        logger.error("JWT secret key is missing or invalid. Check your settings.SECRET_KEY.")
        raise RuntimeError("JWT secret key is missing or invalid. Check your settings.SECRET_KEY.")
    return secret_key


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


async def create_access_token(data: Dict[str, Any]) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode; ``sub`` must be the user id.
    """
    now = datetime.now(timezone.utc)
    to_encode = data.copy()
    to_encode.update(
        {
            "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            "iat": now,
            "sub": data.get("sub"),
            "type": "access",
        }
    )
    encoded_jwt = jwt.encode(to_encode, _secret_key(), algorithm=settings.ALGORITHM)
    logger.debug("JWT access token created for user: %s", data.get("sub"))
    return encoded_jwt


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Validate a token and return the identity claims ``{sub, email}``.

    Raises:
        Unauthenticated: If the token is missing, expired, malformed or not an access token.
    """
    if not token:
        raise Unauthenticated(INVALID_TOKEN_MSG)
    try:
        payload = jwt.decode(token, _secret_key(), algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.warning("Invalid token: %s", e)
        raise Unauthenticated(INVALID_TOKEN_MSG) from e

    if payload.get("type") != "access" or not payload.get("sub"):
        logger.warning("JWT payload missing 'sub' claim or wrong token type")
        raise Unauthenticated(INVALID_TOKEN_MSG)
    return {"sub": payload["sub"], "email": payload.get("email")}


async def login_user(email: str, password: str) -> Dict[str, Any]:
    """
    Check credentials and issue an access token.

    Raises:
        Unauthenticated: If the email is unknown or the password does not match.
    """
    email = (email or "").strip().lower()
    user = await db_manager.get_collection("users").find_one({"email": email})
    if not user or not verify_password(password, user.get("password_hash")):
        logger.info("Failed login attempt for %s", email)
        raise Unauthenticated(INVALID_CREDENTIALS_MSG, "INVALID_CREDENTIALS")

    token = await create_access_token({"sub": user["user_id"], "email": user["email"]})
    logger.info("User %s logged in", user["user_id"])
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": {"user_id": user["user_id"], "name": user.get("name"), "email": user["email"]},
    }
