"""
Password reset flow.

Only the SHA-256 of a reset token is stored. ``forgot_password`` answers identically whether or
not the email is registered.
"""

from datetime import timedelta
import hashlib
import secrets

from pymongo.errors import PyMongoError

from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.email import email_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.routes.auth.services.registration import hash_password
from family_finance.utils.datetime_utils import is_expired, utc_now
from family_finance.utils.error_handling import TransactionError, ValidationError

logger = get_logger(prefix="[Auth Service Password]")

FORGOT_PASSWORD_MSG = "If the email exists, a reset link has been sent."
INVALID_RESET_TOKEN_MSG = "Invalid or expired reset token"


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def forgot_password(email: str) -> str:
    email = (email or "").strip().lower()
    user = await db_manager.get_collection("users").find_one({"email": email})
    if not user:
        logger.info("Password reset requested for unknown email")
        return FORGOT_PASSWORD_MSG

    tokens = db_manager.get_collection("password_reset_tokens")
    await tokens.delete_many({"user_id": user["user_id"]})

    reset_token = secrets.token_urlsafe(32)
    await tokens.insert_one(
        {
            "token_hash": hash_reset_token(reset_token),
            "user_id": user["user_id"],
            "expires_at": utc_now() + timedelta(hours=settings.PASSWORD_RESET_EXPIRY_HOURS),
            "used": False,
            "created_at": utc_now(),
        }
    )

    reset_link = f"{settings.BASE_URL}/reset-password?token={reset_token}"
    try:
        sent = await email_manager.send_password_reset_email(user["email"], reset_link, user.get("name"))
        if not sent:
            logger.error("Password reset email could not be delivered for user %s", user["user_id"])
    except Exception as e:
        logger.error("Failed to send password reset email for user %s: %s", user["user_id"], e)
    return FORGOT_PASSWORD_MSG


async def reset_password(token: str, new_password: str) -> None:
    """
    Set a new password from a reset token.

    Raises:
        ValidationError: If the token is unknown, expired or already used.
    """
    tokens = db_manager.get_collection("password_reset_tokens")
    token_hash = hash_reset_token(token or "")
    record = await tokens.find_one({"token_hash": token_hash})
    if not record:
        raise ValidationError(INVALID_RESET_TOKEN_MSG, field="token")
    if is_expired(record["expires_at"]):
        await tokens.delete_one({"token_hash": token_hash})
        raise ValidationError(INVALID_RESET_TOKEN_MSG, field="token", constraint="expired")
    if record.get("used"):
        raise ValidationError("Reset token has already been used", field="token", constraint="used")

    password_hash = hash_password(new_password)
    try:
        async with db_manager.transaction("reset_password") as session:
            marked = await tokens.update_one(
                {"token_hash": token_hash, "used": False}, {"$set": {"used": True, "used_at": utc_now()}}, session=session
            )
            if marked.modified_count != 1:
                raise ValidationError("Reset token has already been used", field="token", constraint="used")
            await db_manager.get_collection("users").update_one(
                {"user_id": record["user_id"]},
                {"$set": {"password_hash": password_hash, "updated_at": utc_now()}},
                session=session,
            )
    except PyMongoError as e:
        logger.error("Password reset failed for user %s: %s", record["user_id"], e, exc_info=True)
        raise TransactionError("Failed to reset password", operation="reset_password") from e

    logger.info("Password reset for user %s", record["user_id"])
