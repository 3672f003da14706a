"""
Tests for family access resolution, default-family provisioning and the role table.
"""

import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from family_finance.managers.family_context import (
    PERMISSION_ADMIN,
    PERMISSION_READ,
    PERMISSION_WRITE,
    ROLE_ADMIN,
    ROLE_MEMBER,
    ROLE_VIEWER,
    FamilyAccessResolver,
    FamilyContext,
    FamilyInfo,
    has_permission,
    require_permission,
)
from family_finance.utils.error_handling import (
    FamilyNotFound,
    InsufficientPermissions,
    TransactionError,
    Unauthenticated,
)


def _write_conflict():
    return OperationFailure(
        "WriteConflict error", code=112, details={"errorLabels": ["TransientTransactionError"]}
    )


@pytest.fixture
def resolver(mock_db):
    return FamilyAccessResolver(db_manager=mock_db)


@pytest.fixture
def store(collections, sample_user):
    """Route inserts into a dict so later reads see earlier writes."""
    state = {"families": {}, "members": []}
    collections["users"].find_one.return_value = sample_user

    async def insert_family(doc, session=None):
        state["families"][doc["family_id"]] = doc

    async def find_family(query, **kwargs):
        return state["families"].get(query["family_id"])

    async def insert_member(doc, session=None):
        state["members"].append(doc)

    async def find_member(query, sort=None, **kwargs):
        matches = [
            m for m in state["members"] if all(m.get(k) == v for k, v in query.items())
        ]
        return sorted(matches, key=lambda m: m["joined_at"])[0] if matches else None

    collections["families"].insert_one.side_effect = insert_family
    collections["families"].find_one.side_effect = find_family
    collections["family_members"].insert_one.side_effect = insert_member
    collections["family_members"].find_one.side_effect = find_member
    return state


class TestPermissionTable:
    @pytest.mark.parametrize(
        "role,permission,expected",
        [
            (ROLE_ADMIN, PERMISSION_READ, True),
            (ROLE_ADMIN, PERMISSION_WRITE, True),
            (ROLE_ADMIN, PERMISSION_ADMIN, True),
            (ROLE_MEMBER, PERMISSION_READ, True),
            (ROLE_MEMBER, PERMISSION_WRITE, True),
            (ROLE_MEMBER, PERMISSION_ADMIN, False),
            (ROLE_VIEWER, PERMISSION_READ, True),
            (ROLE_VIEWER, PERMISSION_WRITE, False),
            (ROLE_VIEWER, PERMISSION_ADMIN, False),
            ("OWNER", PERMISSION_READ, False),
            (None, PERMISSION_READ, False),
        ],
    )
    def test_has_permission(self, role, permission, expected):
        assert has_permission(role, permission) is expected

    def test_require_permission_returns_family(self, sample_user):
        context = FamilyContext(user=sample_user, family=FamilyInfo(id="fam_1", name="Home", role=ROLE_MEMBER))
        assert require_permission(context, PERMISSION_WRITE).id == "fam_1"

    def test_require_permission_denies_viewer_write(self, sample_user):
        context = FamilyContext(user=sample_user, family=FamilyInfo(id="fam_1", name="Home", role=ROLE_VIEWER))
        with pytest.raises(InsufficientPermissions) as exc_info:
            require_permission(context, PERMISSION_WRITE)
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Insufficient permissions"

    def test_require_permission_without_family(self, sample_user):
        with pytest.raises(InsufficientPermissions):
            require_permission(FamilyContext(user=sample_user, family=None), PERMISSION_READ)


class TestGetFamilyContext:
    @pytest.mark.asyncio
    async def test_missing_identity_is_unauthenticated(self, resolver):
        with pytest.raises(Unauthenticated):
            await resolver.get_family_context(None)

    @pytest.mark.asyncio
    async def test_unknown_user_is_unauthenticated(self, resolver, collections):
        collections["users"].find_one.return_value = None
        with pytest.raises(Unauthenticated):
            await resolver.get_family_context({"sub": "user_ghost"})

    @pytest.mark.asyncio
    async def test_falls_back_to_email_lookup(self, resolver, collections, store):
        await resolver.get_family_context({"email": "Alice@Example.com"})
        collections["users"].find_one.assert_awaited_with({"email": "alice@example.com"})

    @pytest.mark.asyncio
    async def test_first_request_provisions_one_default_family(self, resolver, collections, store):
        first = await resolver.get_family_context({"sub": "user_alice"})
        second = await resolver.get_family_context({"sub": "user_alice"})

        assert first.family.id == second.family.id
        assert first.family.role == ROLE_ADMIN
        assert first.family.name == "Alice's Family"
        assert len(store["families"]) == 1
        assert len(store["members"]) == 1
        assert store["members"][0]["auto_provisioned"] is True
        collections["families"].insert_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_membership_is_used(self, resolver, collections, sample_user):
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.return_value = {
            "member_id": "mem_1",
            "family_id": "fam_home",
            "user_id": "user_alice",
            "role": ROLE_VIEWER,
            "is_active": True,
        }
        collections["families"].find_one.return_value = {"family_id": "fam_home", "name": "Home"}

        context = await resolver.get_family_context({"sub": "user_alice"})

        assert context.family == FamilyInfo(id="fam_home", name="Home", role=ROLE_VIEWER)
        assert context.user_id == "user_alice"
        collections["families"].insert_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_membership_to_missing_family(self, resolver, collections, sample_user):
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.return_value = {
            "member_id": "mem_1",
            "family_id": "fam_gone",
            "role": ROLE_ADMIN,
        }
        with pytest.raises(FamilyNotFound):
            await resolver.get_family_context({"sub": "user_alice"})

    @pytest.mark.asyncio
    async def test_concurrent_provisioning_reuses_winner(self, resolver, collections, sample_user):
        winner = {
            "member_id": "mem_winner",
            "family_id": "fam_winner",
            "user_id": "user_alice",
            "role": ROLE_ADMIN,
            "is_active": True,
        }
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.side_effect = [None, winner]
        collections["family_members"].insert_one.side_effect = DuplicateKeyError("uniq_auto_provisioned_family")
        collections["families"].find_one.return_value = {"family_id": "fam_winner", "name": "Alice's Family"}

        context = await resolver.get_family_context({"sub": "user_alice"})

        assert context.family.id == "fam_winner"
        # Without a transaction session the loser's orphan family is removed
        collections["families"].delete_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_write_conflict_reuses_winner(self, resolver, collections, sample_user):
        winner = {"member_id": "mem_winner", "family_id": "fam_winner", "role": ROLE_ADMIN, "is_active": True}
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.side_effect = [None, winner]
        collections["family_members"].insert_one.side_effect = _write_conflict()
        collections["families"].find_one.return_value = {"family_id": "fam_winner", "name": "Alice's Family"}

        context = await resolver.get_family_context({"sub": "user_alice"})

        assert context.family.id == "fam_winner"
        assert context.family.role == ROLE_ADMIN

    @pytest.mark.asyncio
    async def test_write_conflict_retries_until_winner_commits(
        self, resolver, collections, sample_user, monkeypatch
    ):
        monkeypatch.setattr("family_finance.managers.family_context.PROVISION_RETRY_DELAY", 0)
        winner = {"member_id": "mem_winner", "family_id": "fam_winner", "role": ROLE_ADMIN, "is_active": True}
        collections["users"].find_one.return_value = sample_user
        # initial lookup, re-read while the winner is uncommitted, re-read after it commits
        collections["family_members"].find_one.side_effect = [None, None, winner]
        collections["family_members"].insert_one.side_effect = [
            _write_conflict(),
            DuplicateKeyError("uniq_auto_provisioned_family"),
        ]
        collections["families"].find_one.return_value = {"family_id": "fam_winner", "name": "Alice's Family"}

        context = await resolver.get_family_context({"sub": "user_alice"})

        assert context.family.id == "fam_winner"
        assert collections["family_members"].insert_one.await_count == 2

    @pytest.mark.asyncio
    async def test_provisioning_failure_is_transaction_error(self, resolver, collections, sample_user):
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.return_value = None
        collections["family_members"].insert_one.side_effect = OperationFailure("write failed")

        with pytest.raises(TransactionError):
            await resolver.get_family_context({"sub": "user_alice"})
        collections["families"].delete_one.assert_awaited_once()


class TestValidateFamilyPermission:
    @pytest.mark.asyncio
    async def test_member_with_permission(self, resolver, collections, sample_user):
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.return_value = {"family_id": "fam_1", "role": ROLE_MEMBER}
        collections["families"].find_one.return_value = {"family_id": "fam_1", "name": "Home"}

        access = await resolver.validate_family_permission({"sub": "user_alice"}, "fam_1", PERMISSION_WRITE)

        assert access is not None
        assert access.family["family_id"] == "fam_1"
        assert access.membership["role"] == ROLE_MEMBER

    @pytest.mark.asyncio
    async def test_role_without_permission(self, resolver, collections, sample_user):
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.return_value = {"family_id": "fam_1", "role": ROLE_MEMBER}

        assert await resolver.validate_family_permission({"sub": "user_alice"}, "fam_1", PERMISSION_ADMIN) is None

    @pytest.mark.asyncio
    async def test_non_member(self, resolver, collections, sample_user):
        collections["users"].find_one.return_value = sample_user
        collections["family_members"].find_one.return_value = None

        assert await resolver.validate_family_permission({"sub": "user_alice"}, "fam_x", PERMISSION_READ) is None

    @pytest.mark.asyncio
    async def test_unknown_user(self, resolver, collections):
        collections["users"].find_one.return_value = None

        assert await resolver.validate_family_permission({"sub": "user_ghost"}, "fam_1", PERMISSION_READ) is None
