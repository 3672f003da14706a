"""
AnalyticsManager: the dashboard overview for a family.

Balances and monthly totals are computed in MongoDB with ``$group`` pipelines. Totals use
absolute amounts, so income and expenses are both reported as positive numbers.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from family_finance.database import db_manager
from family_finance.managers.budget_manager import budget_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.transaction_manager import SOURCE_MANUAL
from family_finance.utils.datetime_utils import add_months, month_window, utc_now

logger = get_logger(prefix="[AnalyticsManager]")

RECENT_TRANSACTIONS = 5
BUDGET_OVERVIEW_SIZE = 3
CURRENT = "current"
PREVIOUS = "previous"


def percent_change(current: float, previous: float) -> float:
    """Change against the previous value, one decimal; 0 when there is nothing to compare with."""
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


class AnalyticsManager:
    def __init__(self, db_manager=None, budget_manager=None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.budget_manager = budget_manager or globals()["budget_manager"]
        self.logger = logger

    @property
    def transactions(self):
        return self.db_manager.get_collection("transactions")

    async def _first_row(self, collection_name: str, pipeline: List[Dict[str, Any]]) -> Dict[str, Any]:
        rows = await self.db_manager.get_collection(collection_name).aggregate(pipeline).to_list(length=1)
        return rows[0] if rows else {}

    async def _bank_summary(self, family_id: str) -> Dict[str, Any]:
        return await self._first_row(
            "bank_accounts",
            [
                {"$match": {"family_id": family_id, "is_active": True}},
                {"$group": {"_id": None, "balance": {"$sum": "$balance"}, "count": {"$sum": 1}}},
            ],
        )

    async def _cash_balance(self, family_id: str) -> float:
        """Manual transactions without an account are cash; their signed amounts sum to the balance."""
        row = await self._first_row(
            "transactions",
            [
                {"$match": {"family_id": family_id, "source": SOURCE_MANUAL, "account_id": None}},
                {"$group": {"_id": None, "balance": {"$sum": "$amount"}}},
            ],
        )
        return float(row.get("balance") or 0)

    async def _monthly_totals(
        self, family_id: str, previous_start: datetime, current_start: datetime, current_end: datetime
    ) -> Dict[str, Dict[str, float]]:
        pipeline = [
            {
                "$match": {
                    "family_id": family_id,
                    "date": {"$gte": previous_start, "$lt": current_end + timedelta(days=1)},
                }
            },
            {
                "$group": {
                    "_id": {
                        "month": {"$cond": [{"$gte": ["$date", current_start]}, CURRENT, PREVIOUS]},
                        "type": "$type",
                    },
                    "total": {"$sum": {"$abs": "$amount"}},
                }
            },
        ]
        totals = {CURRENT: {"INCOME": 0.0, "EXPENSE": 0.0}, PREVIOUS: {"INCOME": 0.0, "EXPENSE": 0.0}}
        for row in await self.transactions.aggregate(pipeline).to_list(length=None):
            key = row["_id"]
            if key.get("type") in totals[key["month"]]:
                totals[key["month"]][key["type"]] = float(row["total"])
        return totals

    async def _recent_transactions(self, family_id: str) -> List[Dict[str, Any]]:
        cursor = self.transactions.find({"family_id": family_id}).sort("date", DESCENDING).limit(RECENT_TRANSACTIONS)
        recent = await cursor.to_list(length=RECENT_TRANSACTIONS)
        category_ids = list({t["category_id"] for t in recent if t.get("category_id")})
        names = {}
        if category_ids:
            categories = self.db_manager.get_collection("categories").find({"category_id": {"$in": category_ids}})
            names = {c["category_id"]: c["name"] for c in await categories.to_list(length=None)}
        return [
            {
                "transaction_id": t["transaction_id"],
                "description": t.get("description"),
                "amount": t["amount"],
                "type": t["type"],
                "date": t["date"],
                "category": names.get(t.get("category_id")) or t.get("custom_category") or "Uncategorized",
            }
            for t in recent
        ]

    async def overview(self, family_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Balances, this month against last month, recent activity and the first budgets of the month."""
        now = now or utc_now()
        current_start, current_end = month_window(now.year, now.month)
        previous_start = add_months(current_start, -1)

        start_time = self.db_manager.log_query_start("transactions", "analytics_overview", {"family_id": family_id})
        bank = await self._bank_summary(family_id)
        cash_balance = await self._cash_balance(family_id)
        totals = await self._monthly_totals(family_id, previous_start, current_start, current_end)
        budgets = await self.budget_manager.list_budgets(family_id, now.year, now.month)
        recent = await self._recent_transactions(family_id)
        self.db_manager.log_query_success("transactions", "analytics_overview", start_time)

        bank_balance = float(bank.get("balance") or 0)
        connected = int(bank.get("count") or 0)
        current, previous = totals[CURRENT], totals[PREVIOUS]
        return {
            "total_balance": bank_balance + cash_balance,
            "bank_balance": bank_balance,
            "cash_balance": cash_balance,
            "current_month_income": current["INCOME"],
            "current_month_expenses": current["EXPENSE"],
            "last_month_income": previous["INCOME"],
            "last_month_expenses": previous["EXPENSE"],
            "income_change": percent_change(current["INCOME"], previous["INCOME"]),
            "expense_change": percent_change(current["EXPENSE"], previous["EXPENSE"]),
            "recent_transactions": recent,
            "budget_overview": [
                {
                    "budget_id": b["budget_id"],
                    "category_id": b["category_id"],
                    "name": b.get("name"),
                    "current_spent": b["current_spent"],
                    "effective_limit": b["effective_limit"],
                    "percentage_used": b["percentage_used"],
                    "is_over_budget": b["is_over_budget"],
                    "is_near_limit": b["is_near_limit"],
                }
                for b in budgets[:BUDGET_OVERVIEW_SIZE]
            ],
            "connected_accounts": connected,
            "has_connected_accounts": connected > 0,
        }


analytics_manager = AnalyticsManager()
