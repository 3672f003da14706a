"""
Pytest configuration for Family Finance tests.

Settings are validated at import time, so the required secrets are placed in the
environment before any ``family_finance`` module is imported. Manager tests run against
``mock_db``: a stand-in for ``DatabaseManager`` whose collections are ``AsyncMock`` objects
and whose ``transaction`` yields ``None`` (the no-transaction deployment path).
"""

from collections import defaultdict
from contextlib import asynccontextmanager
import os
import tempfile
from unittest.mock import AsyncMock, MagicMock

import pytest

os.environ.setdefault("SECRET_KEY", "test-jwt-signing-key-for-unit-tests")
os.environ.setdefault("CRON_SECRET", "test-cron-secret-value")
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("ENV_PREFIX", "test")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "family_finance_test_logs"))
os.environ.setdefault("LOKI_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")


def make_cursor(items=None):
    """Motor-style cursor: chainable ``sort/skip/limit`` and an awaitable ``to_list``."""
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=list(items or []))
    return cursor


def make_result(matched=1, modified=1, deleted=1):
    return MagicMock(matched_count=matched, modified_count=modified, deleted_count=deleted)


def make_collection():
    collection = MagicMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock()
    collection.update_one = AsyncMock(return_value=make_result())
    collection.update_many = AsyncMock(return_value=make_result())
    collection.delete_one = AsyncMock(return_value=make_result())
    collection.delete_many = AsyncMock(return_value=make_result())
    collection.count_documents = AsyncMock(return_value=0)
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.distinct = AsyncMock(return_value=[])
    collection.find = MagicMock(return_value=make_cursor())
    collection.aggregate = MagicMock(return_value=make_cursor())
    return collection


@pytest.fixture
def collections():
    """Collections by name, created on first access."""
    return defaultdict(make_collection)


@pytest.fixture
def mock_db(collections):
    db = MagicMock()
    db.get_collection.side_effect = lambda name: collections[name]
    db.log_query_start.return_value = 0.0

    @asynccontextmanager
    async def transaction(operation):
        yield None

    db.transaction = transaction
    return db


@pytest.fixture
def mock_email_jobs():
    jobs = MagicMock()
    jobs.enqueue = AsyncMock(return_value="job_test")
    return jobs


@pytest.fixture
def sample_user():
    return {"user_id": "user_alice", "email": "alice@example.com", "name": "Alice"}
