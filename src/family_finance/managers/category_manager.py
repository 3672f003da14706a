"""
CategoryManager: the shared global categories and each family's custom ones.

Global categories carry ``family_id: None`` and are seeded at startup. Seeding upserts on the
name, so restarts and concurrent workers never create duplicates.
"""

from typing import Any, Dict, List

from pymongo import ASCENDING

from family_finance.database import db_manager
from family_finance.managers.family_context import new_id
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import utc_now

logger = get_logger(prefix="[CategoryManager]")

GLOBAL_CATEGORIES = (
    ("Food & Dining", "#EF4444", "🍽️"),
    ("Transportation", "#3B82F6", "🚗"),
    ("Entertainment", "#8B5CF6", "🎬"),
    ("Utilities", "#F59E0B", "⚡"),
    ("Shopping", "#EC4899", "🛍️"),
    ("Healthcare", "#10B981", "🏥"),
    ("Education", "#6366F1", "📚"),
    ("Travel", "#14B8A6", "✈️"),
    ("Groceries", "#84CC16", "🛒"),
    ("Subscriptions", "#F97316", "📱"),
    ("Rent/Mortgage", "#64748B", "🏠"),
    ("Insurance", "#0EA5E9", "🛡️"),
    ("Savings", "#22C55E", "💰"),
    ("Investment", "#A855F7", "📈"),
    ("Salary", "#059669", "💼"),
    ("Freelance", "#0D9488", "💻"),
    ("Other Income", "#16A34A", "💵"),
    ("Other Expense", "#DC2626", "💸"),
)


class CategoryManager:
    def __init__(self, db_manager=None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.logger = logger

    @property
    def categories(self):
        return self.db_manager.get_collection("categories")

    async def seed_global_categories(self) -> int:
        """Insert any missing global category. Existing rows are left untouched."""
        created = 0
        for name, color, icon in GLOBAL_CATEGORIES:
            result = await self.categories.update_one(
                {"name": name, "family_id": None},
                {
                    "$setOnInsert": {
                        "category_id": new_id("cat"),
                        "name": name,
                        "color": color,
                        "icon": icon,
                        "family_id": None,
                        "created_at": utc_now(),
                    }
                },
                upsert=True,
            )
            if result.upserted_id is not None:
                created += 1
        self.logger.info("Global categories seeded: %d created, %d total", created, len(GLOBAL_CATEGORIES))
        return created

    async def list_categories(self, family_id: str) -> List[Dict[str, Any]]:
        """Global categories followed by the family's own, each group sorted by name."""
        cursor = self.categories.find({"family_id": {"$in": [None, family_id]}}, {"_id": 0}).sort("name", ASCENDING)
        rows = await cursor.to_list(length=None)
        categories = [{**row, "is_custom": row.get("family_id") is not None} for row in rows]
        return sorted(categories, key=lambda category: category["is_custom"])


category_manager = CategoryManager()
