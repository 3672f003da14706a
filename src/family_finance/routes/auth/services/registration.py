"""User registration."""

from typing import Any, Dict
import uuid

import bcrypt
from pymongo.errors import DuplicateKeyError

from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.email_job_manager import JOB_WELCOME_EMAIL, email_job_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import utc_now
from family_finance.utils.error_handling import ValidationError

logger = get_logger(prefix="[Auth Service Registration]")

EMAIL_TAKEN_MSG = "A user with this email already exists"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)).decode("utf-8")


async def register_user(name: str, email: str, password: str) -> Dict[str, Any]:
    """
    Create a user and queue the welcome email.

    The welcome email is best effort: a failure to queue it is logged and ignored.

    Raises:
        ValidationError: If the email is already registered.
    """
    email = email.strip().lower()
    users = db_manager.get_collection("users")
    if await users.find_one({"email": email}):
        raise ValidationError(EMAIL_TAKEN_MSG, field="email", value=email, constraint="unique")

    user = {
        "user_id": f"usr_{uuid.uuid4().hex[:16]}",
        "name": name.strip(),
        "email": email,
        "password_hash": hash_password(password),
        "welcome_email_sent": False,
        "created_at": utc_now(),
    }
    try:
        await users.insert_one(user)
    except DuplicateKeyError as e:
        raise ValidationError(EMAIL_TAKEN_MSG, field="email", value=email, constraint="unique") from e
    logger.info("Registered user %s", user["user_id"])

    try:
        await email_job_manager.enqueue(
            JOB_WELCOME_EMAIL, {"to": email, "name": user["name"], "user_id": user["user_id"]}
        )
    except Exception as e:
        logger.error("Failed to queue welcome email for %s: %s", user["user_id"], e)

    return {"user_id": user["user_id"], "name": user["name"], "email": email, "created_at": user["created_at"]}
