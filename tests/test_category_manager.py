"""
Tests for CategoryManager: startup seeding of global categories and the picker listing.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_cursor
from family_finance.managers.category_manager import GLOBAL_CATEGORIES, CategoryManager


@pytest.fixture
def manager(mock_db):
    return CategoryManager(db_manager=mock_db)


@pytest.mark.asyncio
async def test_seed_upserts_every_global_category(manager, collections):
    collections["categories"].update_one = AsyncMock(return_value=MagicMock(upserted_id="oid"))

    created = await manager.seed_global_categories()

    calls = collections["categories"].update_one.await_args_list
    assert created == len(GLOBAL_CATEGORIES) == 18
    assert len(calls) == 18
    query, update = calls[0].args
    assert query == {"name": "Food & Dining", "family_id": None}
    assert set(update) == {"$setOnInsert"}
    assert update["$setOnInsert"]["color"] == "#EF4444"
    assert update["$setOnInsert"]["category_id"].startswith("cat")
    assert calls[0].kwargs == {"upsert": True}
    assert {call.args[0]["name"] for call in calls} == {name for name, _, _ in GLOBAL_CATEGORIES}


@pytest.mark.asyncio
async def test_reseed_creates_nothing(manager, collections):
    collections["categories"].update_one = AsyncMock(return_value=MagicMock(upserted_id=None))
    assert await manager.seed_global_categories() == 0


@pytest.mark.asyncio
async def test_list_puts_global_categories_first(manager, collections):
    collections["categories"].find.return_value = make_cursor(
        [
            {"category_id": "cat_books", "name": "Books", "family_id": "fam_home"},
            {"category_id": "cat_food", "name": "Food & Dining", "family_id": None},
            {"category_id": "cat_pets", "name": "Pets", "family_id": "fam_home"},
            {"category_id": "cat_salary", "name": "Salary", "family_id": None},
        ]
    )

    categories = await manager.list_categories("fam_home")

    assert [c["category_id"] for c in categories] == ["cat_food", "cat_salary", "cat_books", "cat_pets"]
    assert [c["is_custom"] for c in categories] == [False, False, True, True]
    query, projection = collections["categories"].find.call_args.args
    assert query == {"family_id": {"$in": [None, "fam_home"]}}
    assert projection == {"_id": 0}
