"""
Family access resolution for every authenticated request.

``FamilyAccessResolver.get_family_context`` turns a token identity into the acting user and
their primary family, provisioning a default family on first use. Role checks go through the
fixed ``ROLE_PERMISSIONS`` table. ``validate_family_permission`` re-derives the membership for
an explicit family id and is used where the caller names the family being acted on.

Every denial is uniform: callers never learn whether the identity, the membership or the role
was the failing check.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import uuid

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from family_finance.database import db_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import utc_now
from family_finance.utils.error_handling import (
    FamilyNotFound,
    InsufficientPermissions,
    TransactionError,
    Unauthenticated,
)

logger = get_logger(prefix="[FamilyContext]")

ROLE_ADMIN = "ADMIN"
ROLE_MEMBER = "MEMBER"
ROLE_VIEWER = "VIEWER"
FAMILY_ROLES = (ROLE_ADMIN, ROLE_MEMBER, ROLE_VIEWER)

PERMISSION_READ = "read"
PERMISSION_WRITE = "write"
PERMISSION_ADMIN = "admin"

ROLE_PERMISSIONS = {
    ROLE_ADMIN: frozenset({PERMISSION_READ, PERMISSION_WRITE, PERMISSION_ADMIN}),
    ROLE_MEMBER: frozenset({PERMISSION_READ, PERMISSION_WRITE}),
    ROLE_VIEWER: frozenset({PERMISSION_READ}),
}

DEFAULT_FAMILY_DESCRIPTION = "Default family created automatically"
PROVISION_ATTEMPTS = 3
PROVISION_RETRY_DELAY = 0.05


def _is_provisioning_race(error: PyMongoError) -> bool:
    """Duplicate key on the standalone path, write conflict inside a replica-set transaction."""
    return isinstance(error, DuplicateKeyError) or error.has_error_label("TransientTransactionError")


@dataclass
class FamilyInfo:
    id: str
    name: str
    role: str


@dataclass
class FamilyContext:
    user: Dict[str, Any]
    family: Optional[FamilyInfo]

    @property
    def user_id(self) -> str:
        return self.user["user_id"]


@dataclass
class ScopedFamilyAccess:
    user: Dict[str, Any]
    family: Dict[str, Any]
    membership: Dict[str, Any]


def has_permission(role: Optional[str], permission: str) -> bool:
    """True when ``role`` grants ``permission``; unknown roles grant nothing."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def require_permission(context: FamilyContext, permission: str) -> FamilyInfo:
    """Return the context's family or raise the uniform denial."""
    if context.family is None or not has_permission(context.family.role, permission):
        raise InsufficientPermissions()
    return context.family


def default_family_name(user: Dict[str, Any]) -> str:
    return f"{user.get('name') or user.get('email')}'s Family"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class FamilyAccessResolver:
    """Resolves ``(user, family, role)`` for a request identity."""

    def __init__(self, db_manager=None) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.logger = logger

    async def get_user(self, identity: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Load the user named by a decoded token.

        Raises:
            Unauthenticated: If there is no identity or no matching user.
        """
        if not identity:
            raise Unauthenticated("Authentication required")
        users = self.db_manager.get_collection("users")
        if identity.get("sub"):
            user = await users.find_one({"user_id": identity["sub"]})
        elif identity.get("email"):
            user = await users.find_one({"email": identity["email"].lower()})
        else:
            user = None
        if not user:
            raise Unauthenticated("Authentication required")
        return user

    async def _select_primary_membership(self, user_id: str) -> Optional[Dict[str, Any]]:
        """The primary family is the user's oldest active membership."""
        members = self.db_manager.get_collection("family_members")
        return await members.find_one(
            {"user_id": user_id, "is_active": True},
            sort=[("joined_at", ASCENDING)],
        )

    async def get_family_context(self, identity: Optional[Dict[str, Any]]) -> FamilyContext:
        """
        Resolve the acting user's primary family, provisioning one if needed.

        Raises:
            Unauthenticated: If the identity does not resolve to a user.
            FamilyNotFound: If a membership points at a missing family.
            TransactionError: If provisioning fails.
        """
        user = await self.get_user(identity)
        membership = await self._select_primary_membership(user["user_id"])
        if membership is None:
            membership, family = await self._provision_default_family(user)
        else:
            family = await self.db_manager.get_collection("families").find_one(
                {"family_id": membership["family_id"]}
            )
            if family is None:
                self.logger.error(
                    "Membership %s references missing family %s", membership.get("member_id"), membership["family_id"]
                )
                raise FamilyNotFound("Family not found", family_id=membership["family_id"])

        return FamilyContext(
            user=user,
            family=FamilyInfo(id=family["family_id"], name=family["name"], role=membership["role"]),
        )

    async def _provision_default_family(self, user: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Create a family and an ADMIN membership for a user with no memberships.

        Both writes share one transaction. The ``auto_provisioned`` membership is unique per
        user while active, so a concurrent provisioning for the same user fails with a
        duplicate key, or with a write conflict while the winner's transaction is still open.
        The loser re-reads the winner's membership, retrying briefly until it is visible.
        """
        user_id = user["user_id"]
        now = utc_now()
        family_id = new_id("fam")
        family_doc = {
            "family_id": family_id,
            "name": default_family_name(user),
            "description": DEFAULT_FAMILY_DESCRIPTION,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }
        member_doc = {
            "member_id": new_id("mem"),
            "family_id": family_id,
            "user_id": user_id,
            "role": ROLE_ADMIN,
            "is_active": True,
            "auto_provisioned": True,
            "joined_at": now,
        }
        families = self.db_manager.get_collection("families")
        members = self.db_manager.get_collection("family_members")
        start_time = self.db_manager.log_query_start("families", "provision_default_family", {"user_id": user_id})

        for attempt in range(1, PROVISION_ATTEMPTS + 1):
            try:
                async with self.db_manager.transaction("provision_default_family") as session:
                    await families.insert_one(family_doc, session=session)
                    try:
                        await members.insert_one(member_doc, session=session)
                    except PyMongoError:
                        if session is None:
                            await families.delete_one({"family_id": family_id})
                        raise
                break
            except PyMongoError as e:
                if not _is_provisioning_race(e):
                    self.db_manager.log_query_error(
                        "families", "provision_default_family", start_time, e, {"user_id": user_id}
                    )
                    raise TransactionError(
                        "Failed to provision default family",
                        operation="provision_default_family",
                        rollback_successful=True,
                    ) from e

                self.logger.info(
                    "Concurrent default family provisioning for user %s (attempt %d/%d); reusing existing family",
                    user_id,
                    attempt,
                    PROVISION_ATTEMPTS,
                )
                membership = await self._select_primary_membership(user_id)
                family = await families.find_one({"family_id": membership["family_id"]}) if membership else None
                if membership is not None and family is not None:
                    return membership, family
                if attempt == PROVISION_ATTEMPTS:
                    raise TransactionError(
                        "Failed to provision default family",
                        operation="provision_default_family",
                        rollback_successful=True,
                    ) from e
                # The winning transaction has not committed yet
                await asyncio.sleep(PROVISION_RETRY_DELAY * attempt)

        self.db_manager.log_query_success(
            "families", "provision_default_family", start_time, 1, f"Default family {family_id} for {user_id}"
        )
        self.logger.info("Provisioned default family %s for user %s", family_id, user_id)
        return member_doc, family_doc

    async def validate_family_permission(
        self, identity: Optional[Dict[str, Any]], family_id: str, permission: str
    ) -> Optional[ScopedFamilyAccess]:
        """
        Re-derive the membership for an explicit family.

        Returns:
            ScopedFamilyAccess, or None when the user is unknown, not an active member of
            ``family_id``, or lacks ``permission`` there.
        """
        try:
            user = await self.get_user(identity)
        except Unauthenticated:
            return None

        membership = await self.db_manager.get_collection("family_members").find_one(
            {"family_id": family_id, "user_id": user["user_id"], "is_active": True}
        )
        if not membership or not has_permission(membership.get("role"), permission):
            self.logger.debug("Scoped permission '%s' denied on family %s", permission, family_id)
            return None

        family = await self.db_manager.get_collection("families").find_one({"family_id": family_id})
        if not family:
            return None
        return ScopedFamilyAccess(user=user, family=family, membership=membership)


family_access_resolver = FamilyAccessResolver()
