"""
Tests for connection setup and the transaction helper on deployments without replica sets.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from family_finance.database.manager import DatabaseManager

DB_MODULE = "family_finance.database.manager"


def _standalone_client():
    client = MagicMock()
    client.admin.command = AsyncMock(return_value={"ok": 1})
    return client


@pytest.mark.asyncio
async def test_standalone_warns_once_at_connect():
    manager = DatabaseManager()
    with patch(f"{DB_MODULE}.AsyncIOMotorClient", return_value=_standalone_client()), patch(
        f"{DB_MODULE}.db_logger"
    ) as log:
        await manager.connect()
        for _ in range(3):
            async with manager.transaction("remove_member") as session:
                assert session is None

    assert manager.transactions_supported is False
    assert log.warning.call_count == 1
    assert log.debug.call_count == 3


@pytest.mark.asyncio
async def test_replica_set_is_detected():
    client = _standalone_client()
    client.admin.command = AsyncMock(side_effect=[{"ok": 1}, {"setName": "rs0"}])
    manager = DatabaseManager()
    with patch(f"{DB_MODULE}.AsyncIOMotorClient", return_value=client), patch(f"{DB_MODULE}.db_logger") as log:
        await manager.connect()

    assert manager.transactions_supported is True
    log.warning.assert_not_called()


@pytest.mark.asyncio
async def test_get_collection_before_connect():
    with pytest.raises(RuntimeError):
        DatabaseManager().get_collection("families")
