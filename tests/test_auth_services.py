"""
Tests for token handling, login and the password reset flow.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from jose import jwt
import pytest

from conftest import make_result
from family_finance.config import settings
from family_finance.routes.auth.services.login import (
    INVALID_CREDENTIALS_MSG,
    create_access_token,
    decode_access_token,
    login_user,
    verify_password,
)
from family_finance.routes.auth.services.password import (
    FORGOT_PASSWORD_MSG,
    forgot_password,
    hash_reset_token,
    reset_password,
)
from family_finance.routes.auth.services.registration import hash_password, register_user
from family_finance.utils.datetime_utils import utc_now
from family_finance.utils.error_handling import Unauthenticated, ValidationError

LOGIN_MODULE = "family_finance.routes.auth.services.login"
PASSWORD_MODULE = "family_finance.routes.auth.services.password"
REGISTRATION_MODULE = "family_finance.routes.auth.services.registration"


def _encode(claims):
    return jwt.encode(claims, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)


class TestTokens:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        token = await create_access_token({"sub": "user_alice", "email": "alice@example.com"})
        assert decode_access_token(token) == {"sub": "user_alice", "email": "alice@example.com"}

    def test_expired_token(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        token = _encode({"sub": "user_alice", "type": "access", "exp": past})
        with pytest.raises(Unauthenticated):
            decode_access_token(token)

    def test_wrong_token_type(self):
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = _encode({"sub": "user_alice", "type": "refresh", "exp": future})
        with pytest.raises(Unauthenticated):
            decode_access_token(token)

    def test_tampered_token(self):
        token = jwt.encode({"sub": "user_alice", "type": "access"}, "another-key", algorithm="HS256")
        with pytest.raises(Unauthenticated):
            decode_access_token(token)

    def test_missing_token(self):
        with pytest.raises(Unauthenticated):
            decode_access_token("")


class TestPasswords:
    def test_hash_and_verify(self):
        password_hash = hash_password("s3cret-pass")
        assert verify_password("s3cret-pass", password_hash) is True
        assert verify_password("wrong", password_hash) is False
        assert verify_password("", password_hash) is False


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_success(self, mock_db, collections):
        collections["users"].find_one.return_value = {
            "user_id": "user_alice",
            "email": "alice@example.com",
            "name": "Alice",
            "password_hash": hash_password("s3cret-pass"),
        }
        with patch(f"{LOGIN_MODULE}.db_manager", mock_db):
            result = await login_user(" Alice@Example.com ", "s3cret-pass")

        assert result["token_type"] == "bearer"
        assert result["user"] == {"user_id": "user_alice", "name": "Alice", "email": "alice@example.com"}
        assert decode_access_token(result["access_token"])["sub"] == "user_alice"
        collections["users"].find_one.assert_awaited_once_with({"email": "alice@example.com"})

    @pytest.mark.asyncio
    async def test_unknown_email_and_bad_password_look_the_same(self, mock_db, collections):
        with patch(f"{LOGIN_MODULE}.db_manager", mock_db):
            with pytest.raises(Unauthenticated) as unknown:
                await login_user("nobody@example.com", "whatever")

            collections["users"].find_one.return_value = {
                "user_id": "user_alice",
                "email": "alice@example.com",
                "password_hash": hash_password("s3cret-pass"),
            }
            with pytest.raises(Unauthenticated) as wrong:
                await login_user("alice@example.com", "whatever")

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS_MSG


class TestRegistration:
    @pytest.mark.asyncio
    async def test_duplicate_email(self, mock_db, collections):
        collections["users"].find_one.return_value = {"user_id": "user_alice", "email": "alice@example.com"}
        with patch(f"{REGISTRATION_MODULE}.db_manager", mock_db):
            with pytest.raises(ValidationError):
                await register_user("Alice", "alice@example.com", "s3cret-pass")


class TestPasswordReset:
    @pytest.mark.asyncio
    async def test_forgot_password_unknown_email(self, mock_db, collections):
        with patch(f"{PASSWORD_MODULE}.db_manager", mock_db):
            assert await forgot_password("nobody@example.com") == FORGOT_PASSWORD_MSG
        collections["password_reset_tokens"].insert_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_forgot_password_stores_hash_only(self, mock_db, collections):
        collections["users"].find_one.return_value = {"user_id": "user_alice", "email": "alice@example.com"}
        sender = AsyncMock(return_value=True)
        with patch(f"{PASSWORD_MODULE}.db_manager", mock_db), patch(
            f"{PASSWORD_MODULE}.email_manager.send_password_reset_email", sender
        ):
            assert await forgot_password("alice@example.com") == FORGOT_PASSWORD_MSG

        record = collections["password_reset_tokens"].insert_one.await_args.args[0]
        reset_link = sender.await_args.args[1]
        raw_token = reset_link.split("token=")[1]
        assert record["token_hash"] == hash_reset_token(raw_token)
        assert raw_token not in record.values()

    @pytest.mark.asyncio
    async def test_reset_with_valid_token(self, mock_db, collections):
        collections["password_reset_tokens"].find_one.return_value = {
            "token_hash": hash_reset_token("tok"),
            "user_id": "user_alice",
            "expires_at": utc_now() + timedelta(minutes=30),
            "used": False,
        }
        with patch(f"{PASSWORD_MODULE}.db_manager", mock_db):
            await reset_password("tok", "new-password")

        query, update = collections["users"].update_one.await_args.args
        assert query == {"user_id": "user_alice"}
        assert verify_password("new-password", update["$set"]["password_hash"])

    @pytest.mark.asyncio
    async def test_reset_with_expired_token(self, mock_db, collections):
        collections["password_reset_tokens"].find_one.return_value = {
            "token_hash": hash_reset_token("tok"),
            "user_id": "user_alice",
            "expires_at": utc_now() - timedelta(minutes=1),
            "used": False,
        }
        with patch(f"{PASSWORD_MODULE}.db_manager", mock_db):
            with pytest.raises(ValidationError):
                await reset_password("tok", "new-password")
        collections["password_reset_tokens"].delete_one.assert_awaited_once()
        collections["users"].update_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reset_token_used_twice(self, mock_db, collections):
        collections["password_reset_tokens"].find_one.return_value = {
            "token_hash": hash_reset_token("tok"),
            "user_id": "user_alice",
            "expires_at": utc_now() + timedelta(minutes=30),
            "used": False,
        }
        collections["password_reset_tokens"].update_one.return_value = make_result(modified=0)
        with patch(f"{PASSWORD_MODULE}.db_manager", mock_db):
            with pytest.raises(ValidationError):
                await reset_password("tok", "new-password")
        collections["users"].update_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reset_with_unknown_token(self, mock_db):
        with patch(f"{PASSWORD_MODULE}.db_manager", mock_db):
            with pytest.raises(ValidationError):
                await reset_password("missing", "new-password")
