"""
FamilyManager: families, invitations and memberships.

Membership rows are never hard-deleted. Removal flips ``is_active`` and stamps ``removed_at``.
Role changes and removals in one family are serialized through a short lease on the family
document, so the admin count they check cannot change before their write lands and a family
is never left without an active ADMIN.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
import secrets
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.email_job_manager import JOB_FAMILY_INVITATION, email_job_manager
from family_finance.managers.family_context import FAMILY_ROLES, ROLE_ADMIN, ROLE_MEMBER, new_id
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import is_expired, utc_now
from family_finance.utils.error_handling import (
    Conflict,
    FamilyNotFound,
    Forbidden,
    InvitationAlreadyAccepted,
    InvitationExpired,
    InvitationNotFound,
    LastAdminRemoval,
    NotFound,
    TransactionError,
    ValidationError,
)

logger = get_logger(prefix="[FamilyManager]")

FAMILY_NAME_MAX_LENGTH = 100
MEMBER_LOCK_TTL = timedelta(seconds=30)
MEMBER_LOCK_ATTEMPTS = 5
MEMBER_LOCK_RETRY_DELAY = 0.05


def _public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {"user_id": user["user_id"], "name": user.get("name"), "email": user.get("email")}


def _validate_role(role: str) -> str:
    role = (role or "").upper()
    if role not in FAMILY_ROLES:
        raise ValidationError("Invalid role", field="role", value=role, constraint="one of " + ", ".join(FAMILY_ROLES))
    return role


class FamilyManager:
    """Family lifecycle, invitation flow and member administration."""

    def __init__(self, db_manager=None, email_job_manager=None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.email_job_manager = email_job_manager or globals()["email_job_manager"]
        self.logger = logger

    @property
    def families(self):
        return self.db_manager.get_collection("families")

    @property
    def members(self):
        return self.db_manager.get_collection("family_members")

    @property
    def invitations(self):
        return self.db_manager.get_collection("family_invitations")

    @property
    def users(self):
        return self.db_manager.get_collection("users")

    async def create_family(self, user_id: str, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        """Create a family with the caller as its first ADMIN."""
        name = (name or "").strip()
        if not name or len(name) > FAMILY_NAME_MAX_LENGTH:
            raise ValidationError(
                "Family name must be between 1 and 100 characters", field="name", value=name, constraint="1-100 chars"
            )

        now = utc_now()
        family_doc = {
            "family_id": new_id("fam"),
            "name": name,
            "description": description,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }
        member_doc = {
            "member_id": new_id("mem"),
            "family_id": family_doc["family_id"],
            "user_id": user_id,
            "role": ROLE_ADMIN,
            "is_active": True,
            "joined_at": now,
        }

        start_time = self.db_manager.log_query_start("families", "create_family", {"user_id": user_id})
        try:
            async with self.db_manager.transaction("create_family") as session:
                await self.families.insert_one(family_doc, session=session)
                try:
                    await self.members.insert_one(member_doc, session=session)
                except PyMongoError:
                    if session is None:
                        await self.families.delete_one({"family_id": family_doc["family_id"]})
                    raise
        except PyMongoError as e:
            self.db_manager.log_query_error("families", "create_family", start_time, e, {"user_id": user_id})
            raise TransactionError("Failed to create family", operation="create_family") from e

        self.db_manager.log_query_success("families", "create_family", start_time, 1)
        self.logger.info("User %s created family %s", user_id, family_doc["family_id"])
        return {**family_doc, "role": ROLE_ADMIN}

    async def list_members(self, family_id: str) -> List[Dict[str, Any]]:
        """Active members of a family, oldest first, with their public user fields."""
        cursor = self.members.find({"family_id": family_id, "is_active": True}).sort("joined_at", ASCENDING)
        memberships = await cursor.to_list(length=None)
        user_ids = [m["user_id"] for m in memberships]
        users = await self.users.find({"user_id": {"$in": user_ids}}).to_list(length=None) if user_ids else []
        users_by_id = {u["user_id"]: u for u in users}
        return [
            {
                "member_id": m["member_id"],
                "role": m["role"],
                "joined_at": m.get("joined_at"),
                "user": _public_user(users_by_id.get(m["user_id"])),
            }
            for m in memberships
        ]

    async def list_user_families(self, user_id: str) -> List[Dict[str, Any]]:
        """Every family the user actively belongs to, with its members."""
        cursor = self.members.find({"user_id": user_id, "is_active": True}).sort("joined_at", ASCENDING)
        memberships = await cursor.to_list(length=None)
        results = []
        for membership in memberships:
            family = await self.families.find_one({"family_id": membership["family_id"]})
            if not family:
                self.logger.warning("Skipping membership %s with missing family", membership["member_id"])
                continue
            results.append(
                {
                    "id": family["family_id"],
                    "name": family["name"],
                    "description": family.get("description"),
                    "role": membership["role"],
                    "joined_at": membership.get("joined_at"),
                    "members": await self.list_members(family["family_id"]),
                }
            )
        return results

    async def invite_member(
        self, family_id: str, inviter_id: str, email: str, role: str = ROLE_MEMBER
    ) -> Dict[str, Any]:
        """
        Create an invitation and queue the invitation email.

        Raises:
            Conflict: If the email already belongs to an active member or has a live invitation.
        """
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required", field="email", value=email)
        role = _validate_role(role)

        family = await self.families.find_one({"family_id": family_id})
        if not family:
            raise FamilyNotFound("Family not found", family_id=family_id)

        invitee = await self.users.find_one({"email": email})
        if invitee:
            existing = await self.members.find_one(
                {"family_id": family_id, "user_id": invitee["user_id"], "is_active": True}
            )
            if existing:
                raise Conflict("User is already a member of this family", "ALREADY_MEMBER", {"email": email})

        now = utc_now()
        pending = await self.invitations.find_one(
            {"family_id": family_id, "email": email, "is_accepted": False, "expires_at": {"$gt": now}}
        )
        if pending:
            raise Conflict("An invitation is already pending for this email", "INVITATION_PENDING", {"email": email})

        invitation = {
            "invitation_id": new_id("inv"),
            "family_id": family_id,
            "email": email,
            "role": role,
            "token": secrets.token_hex(32),
            "invited_by": inviter_id,
            "expires_at": now + timedelta(days=settings.INVITATION_EXPIRY_DAYS),
            "is_accepted": False,
            "accepted_at": None,
            "created_at": now,
        }
        await self.invitations.insert_one(invitation)
        self.logger.info("Invitation %s created for family %s", invitation["invitation_id"], family_id)

        inviter = await self.users.find_one({"user_id": inviter_id})
        try:
            await self.email_job_manager.enqueue(
                JOB_FAMILY_INVITATION,
                {
                    "to": email,
                    "inviter_name": (inviter or {}).get("name") or (inviter or {}).get("email", ""),
                    "family_name": family["name"],
                    "invite_url": f"{settings.BASE_URL}/invite/{invitation['token']}",
                    "role": role,
                    "expires_at": invitation["expires_at"].strftime("%Y-%m-%d"),
                },
            )
        except Exception as e:
            self.logger.error("Failed to queue invitation email for %s: %s", invitation["invitation_id"], e)

        return invitation

    async def get_invitation_by_token(self, token: str) -> Dict[str, Any]:
        """
        Invitation preview. Checks run in a fixed order: not found, expired, already accepted.
        """
        invitation = await self.invitations.find_one({"token": token})
        if not invitation:
            raise InvitationNotFound()
        if is_expired(invitation["expires_at"]):
            raise InvitationExpired(expires_at=invitation["expires_at"])
        if invitation.get("is_accepted"):
            raise InvitationAlreadyAccepted()

        family = await self.families.find_one({"family_id": invitation["family_id"]})
        inviter = await self.users.find_one({"user_id": invitation["invited_by"]})
        return {
            "invitation_id": invitation["invitation_id"],
            "email": invitation["email"],
            "role": invitation["role"],
            "expires_at": invitation["expires_at"],
            "family": {"id": invitation["family_id"], "name": (family or {}).get("name")},
            "invited_by": _public_user(inviter),
        }

    async def accept_invitation(self, token: str, user_id: str, user_email: str) -> Dict[str, Any]:
        """
        Accept an invitation for the signed-in user.

        Raises, in this order:
            InvitationNotFound, InvitationExpired, InvitationAlreadyAccepted,
            Forbidden (email mismatch), Conflict (already an active member).
        """
        invitation = await self.invitations.find_one({"token": token})
        if not invitation:
            raise InvitationNotFound()
        if is_expired(invitation["expires_at"]):
            raise InvitationExpired(expires_at=invitation["expires_at"])
        if invitation.get("is_accepted"):
            raise InvitationAlreadyAccepted()
        if (user_email or "").strip().lower() != invitation["email"].lower():
            raise Forbidden("This invitation was sent to a different email address", "INVITATION_EMAIL_MISMATCH")

        family_id = invitation["family_id"]
        existing = await self.members.find_one({"family_id": family_id, "user_id": user_id, "is_active": True})
        if existing:
            raise Conflict("You are already a member of this family", "ALREADY_MEMBER")

        now = utc_now()
        member_doc = {
            "member_id": new_id("mem"),
            "family_id": family_id,
            "user_id": user_id,
            "role": invitation["role"],
            "is_active": True,
            "joined_at": now,
            "invited_at": invitation.get("created_at"),
            "invited_by": invitation.get("invited_by"),
        }

        try:
            async with self.db_manager.transaction("accept_invitation") as session:
                marked = await self.invitations.update_one(
                    {"invitation_id": invitation["invitation_id"], "is_accepted": False},
                    {"$set": {"is_accepted": True, "accepted_at": now}},
                    session=session,
                )
                if marked.modified_count != 1:
                    raise InvitationAlreadyAccepted()
                try:
                    await self.members.insert_one(member_doc, session=session)
                except PyMongoError:
                    if session is None:
                        await self.invitations.update_one(
                            {"invitation_id": invitation["invitation_id"]},
                            {"$set": {"is_accepted": False, "accepted_at": None}},
                        )
                    raise
        except DuplicateKeyError as e:
            raise Conflict("You are already a member of this family", "ALREADY_MEMBER") from e
        except PyMongoError as e:
            self.logger.error("Failed to accept invitation %s: %s", invitation["invitation_id"], e, exc_info=True)
            raise TransactionError("Failed to accept invitation", operation="accept_invitation") from e

        family = await self.families.find_one({"family_id": family_id})
        self.logger.info("User %s joined family %s as %s", user_id, family_id, member_doc["role"])
        return {
            "family": {"id": family_id, "name": (family or {}).get("name")},
            "member_id": member_doc["member_id"],
            "role": member_doc["role"],
        }

    async def cancel_invitation(self, family_id: str, invitation_id: str) -> None:
        result = await self.invitations.delete_one({"invitation_id": invitation_id, "family_id": family_id})
        if result.deleted_count == 0:
            raise InvitationNotFound("Invitation not found", invitation_id=invitation_id)
        self.logger.info("Invitation %s cancelled in family %s", invitation_id, family_id)

    async def list_invitations(self, family_id: str) -> List[Dict[str, Any]]:
        """Pending invitations (not accepted, not expired) for a family."""
        cursor = self.invitations.find(
            {"family_id": family_id, "is_accepted": False, "expires_at": {"$gt": utc_now()}},
            {"token": 0},
        ).sort("created_at", ASCENDING)
        return await cursor.to_list(length=None)

    async def _get_member(self, family_id: str, member_id: str, session=None) -> Dict[str, Any]:
        member = await self.members.find_one(
            {"member_id": member_id, "family_id": family_id, "is_active": True}, session=session
        )
        if not member:
            raise NotFound("Member not found", "MEMBER_NOT_FOUND", {"member_id": member_id})
        return member

    async def _active_admin_count(self, family_id: str, session=None) -> int:
        return await self.members.count_documents(
            {"family_id": family_id, "role": ROLE_ADMIN, "is_active": True}, session=session
        )

    @asynccontextmanager
    async def _member_lock(self, family_id: str):
        """
        Hold the family's membership lease for the duration of the block.

        The lease is written outside any transaction so a concurrent holder sees it
        immediately. An abandoned lease expires after ``MEMBER_LOCK_TTL``.

        Raises:
            Conflict: If the lease stays taken after ``MEMBER_LOCK_ATTEMPTS`` tries.
        """
        token = secrets.token_hex(8)
        for attempt in range(1, MEMBER_LOCK_ATTEMPTS + 1):
            now = utc_now()
            result = await self.families.update_one(
                {
                    "family_id": family_id,
                    "$or": [{"member_lock": None}, {"member_lock_expires_at": {"$lte": now}}],
                },
                {"$set": {"member_lock": token, "member_lock_expires_at": now + MEMBER_LOCK_TTL}},
            )
            if result.modified_count == 1:
                break
            self.logger.debug("Membership lease on family %s busy (attempt %d)", family_id, attempt)
            await asyncio.sleep(MEMBER_LOCK_RETRY_DELAY * attempt)
        else:
            raise Conflict(
                "Another membership change is in progress, please retry",
                "MEMBERSHIP_CHANGE_IN_PROGRESS",
                {"family_id": family_id},
            )

        try:
            yield
        finally:
            await self.families.update_one(
                {"family_id": family_id, "member_lock": token},
                {"$set": {"member_lock": None, "member_lock_expires_at": None}},
            )

    async def update_member_role(self, family_id: str, actor_id: str, member_id: str, role: str) -> Dict[str, Any]:
        """
        Change a member's role.

        Raises:
            Forbidden: If the actor targets their own membership.
            LastAdminRemoval: If this would demote the last active ADMIN.
        """
        role = _validate_role(role)
        async with self._member_lock(family_id):
            async with self.db_manager.transaction("update_member_role") as session:
                member = await self._get_member(family_id, member_id, session=session)
                if member["user_id"] == actor_id:
                    raise Forbidden("You cannot change your own role", "SELF_ROLE_CHANGE")
                if member["role"] == ROLE_ADMIN and role != ROLE_ADMIN:
                    if await self._active_admin_count(family_id, session=session) <= 1:
                        raise LastAdminRemoval(
                            "Cannot demote the last admin of the family", family_id=family_id, member_id=member_id
                        )
                await self.members.update_one(
                    {"member_id": member_id, "family_id": family_id, "is_active": True},
                    {"$set": {"role": role, "updated_at": utc_now()}},
                    session=session,
                )

        self.logger.info("Member %s in family %s is now %s (by %s)", member_id, family_id, role, actor_id)
        return {**member, "role": role}

    async def remove_member(self, family_id: str, actor_id: str, member_id: str) -> None:
        """
        Soft-delete a membership.

        Raises:
            Forbidden: If the actor targets their own membership.
            LastAdminRemoval: If the target is the last active ADMIN.
        """
        async with self._member_lock(family_id):
            async with self.db_manager.transaction("remove_member") as session:
                member = await self._get_member(family_id, member_id, session=session)
                if member["user_id"] == actor_id:
                    raise Forbidden("You cannot remove yourself from the family", "SELF_REMOVAL")
                if member["role"] == ROLE_ADMIN and await self._active_admin_count(family_id, session=session) <= 1:
                    raise LastAdminRemoval(
                        "Cannot remove the last admin of the family", family_id=family_id, member_id=member_id
                    )
                await self.members.update_one(
                    {"member_id": member_id, "family_id": family_id, "is_active": True},
                    {"$set": {"is_active": False, "removed_at": utc_now()}},
                    session=session,
                )

        self.logger.info("Member %s removed from family %s by %s", member_id, family_id, actor_id)


family_manager = FamilyManager()
