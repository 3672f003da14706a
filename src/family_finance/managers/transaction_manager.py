"""
TransactionManager: family transaction listing, manual entry and deletion.

Amounts follow one sign convention: INCOME is stored positive, EXPENSE negative.
"""

from datetime import datetime
import re
from typing import Any, Dict, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from family_finance.database import db_manager
from family_finance.managers.family_context import ROLE_ADMIN, new_id
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import ensure_timezone_aware, utc_now
from family_finance.utils.error_handling import Forbidden, NotFound, ValidationError

logger = get_logger(prefix="[TransactionManager]")

TRANSACTION_TYPES = ("INCOME", "EXPENSE")
SOURCE_MANUAL = "MANUAL"
SOURCE_BELVO = "BELVO"
MIN_AMOUNT = 0.01
MAX_PAGE_SIZE = 100


def signed_amount(amount: float, transaction_type: str) -> float:
    return -abs(amount) if transaction_type == "EXPENSE" else abs(amount)


class TransactionManager:
    def __init__(self, db_manager=None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.logger = logger

    @property
    def transactions(self):
        return self.db_manager.get_collection("transactions")

    @property
    def categories(self):
        return self.db_manager.get_collection("categories")

    async def list_transactions(
        self,
        family_id: str,
        page: int = 1,
        limit: int = 20,
        category_id: Optional[str] = None,
        transaction_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Filtered, paginated transactions, newest first."""
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        query: Dict[str, Any] = {"family_id": family_id}
        if category_id:
            query["category_id"] = category_id
        if transaction_type:
            if transaction_type.upper() not in TRANSACTION_TYPES:
                raise ValidationError("Invalid transaction type", field="type", value=transaction_type)
            query["type"] = transaction_type.upper()
        if start_date or end_date:
            date_range = {}
            if start_date:
                date_range["$gte"] = ensure_timezone_aware(start_date)
            if end_date:
                date_range["$lte"] = ensure_timezone_aware(end_date)
            query["date"] = date_range
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [{"description": pattern}, {"merchant_info.name": pattern}]

        start_time = self.db_manager.log_query_start("transactions", "list_transactions", query)
        total = await self.transactions.count_documents(query)
        cursor = self.transactions.find(query).sort("date", DESCENDING).skip((page - 1) * limit).limit(limit)
        items = await cursor.to_list(length=limit)
        self.db_manager.log_query_success("transactions", "list_transactions", start_time, len(items))

        return {
            "transactions": items,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        }

    async def _resolve_category(
        self, family_id: str, category_id: Optional[str], custom_category: Optional[str]
    ) -> Optional[str]:
        """A named custom category is found or created in the family; an id must already exist."""
        if custom_category and custom_category.strip():
            name = custom_category.strip()
            existing = await self.categories.find_one({"family_id": family_id, "name": name})
            if existing:
                return existing["category_id"]
            category = {
                "category_id": new_id("cat"),
                "name": name,
                "color": None,
                "icon": None,
                "family_id": family_id,
                "created_at": utc_now(),
            }
            try:
                await self.categories.insert_one(category)
            except DuplicateKeyError:
                # Created by a concurrent request
                existing = await self.categories.find_one({"family_id": family_id, "name": name})
                return existing["category_id"]
            self.logger.info("Created custom category '%s' in family %s", name, family_id)
            return category["category_id"]

        if category_id:
            category = await self.categories.find_one(
                {"category_id": category_id, "family_id": {"$in": [None, family_id]}}
            )
            if not category:
                raise ValidationError("Category not found", field="category_id", value=category_id)
            return category_id
        return None

    async def create_manual_transaction(self, family_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            amount = float(data.get("amount"))
        except (TypeError, ValueError):
            raise ValidationError("Amount must be a number", field="amount", value=data.get("amount"))
        if amount < MIN_AMOUNT:
            raise ValidationError("Amount must be at least 0.01", field="amount", value=amount, constraint=">= 0.01")
        transaction_type = (data.get("type") or "").upper()
        if transaction_type not in TRANSACTION_TYPES:
            raise ValidationError("Type must be INCOME or EXPENSE", field="type", value=data.get("type"))
        description = (data.get("description") or "").strip()
        if not description:
            raise ValidationError("Description is required", field="description")

        category_id = await self._resolve_category(family_id, data.get("category_id"), data.get("custom_category"))
        now = utc_now()
        transaction = {
            "transaction_id": new_id("txn"),
            "family_id": family_id,
            "user_id": user_id,
            "account_id": None,
            "category_id": category_id,
            "amount": signed_amount(amount, transaction_type),
            "type": transaction_type,
            "description": description,
            "date": ensure_timezone_aware(data["date"]) if data.get("date") else now,
            "source": SOURCE_MANUAL,
            "custom_category": data.get("custom_category"),
            "created_at": now,
        }
        await self.transactions.insert_one(transaction)
        self.logger.info(
            "Manual %s transaction %s created in family %s", transaction_type, transaction["transaction_id"], family_id
        )
        return transaction

    async def delete_transaction(self, family_id: str, user_id: str, role: str, transaction_id: str) -> None:
        """
        Delete a manual transaction.

        Raises:
            NotFound: If the transaction is not in the family.
            Forbidden: For bank-synced rows, or when the caller is neither creator nor ADMIN.
        """
        transaction = await self.transactions.find_one({"transaction_id": transaction_id, "family_id": family_id})
        if not transaction:
            raise NotFound("Transaction not found", "TRANSACTION_NOT_FOUND", {"transaction_id": transaction_id})
        if transaction.get("source") == SOURCE_BELVO:
            raise Forbidden("Bank-synced transactions cannot be deleted", "BANK_TRANSACTION_IMMUTABLE")
        if transaction.get("user_id") != user_id and role != ROLE_ADMIN:
            raise Forbidden("Only the creator or an admin can delete this transaction", "NOT_TRANSACTION_OWNER")

        await self.transactions.delete_one({"transaction_id": transaction_id, "family_id": family_id})
        self.logger.info("Transaction %s deleted by %s", transaction_id, user_id)


transaction_manager = TransactionManager()
