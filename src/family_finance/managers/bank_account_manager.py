"""
BankAccountManager: linked bank accounts and their synced transactions.

Synced transactions are deduplicated on the provider's transaction id, stored as
``external_id`` under a unique sparse index.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from family_finance.database import db_manager
from family_finance.integrations.belvo import belvo_client
from family_finance.managers.family_context import new_id
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.transaction_manager import SOURCE_BELVO, signed_amount
from family_finance.utils.datetime_utils import ensure_timezone_aware, utc_now
from family_finance.utils.error_handling import NotFound, ValidationError

logger = get_logger(prefix="[BankAccountManager]")

INITIAL_SYNC_DAYS = 90
WEBHOOK_TRANSACTIONS = "TRANSACTIONS"
WEBHOOK_ACCOUNTS = "ACCOUNTS"


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_timezone_aware(value)
    return ensure_timezone_aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def map_provider_transaction(raw: Dict[str, Any], account: Dict[str, Any]) -> Dict[str, Any]:
    """Provider transaction -> ``transactions`` document. INFLOW is INCOME, everything else EXPENSE."""
    transaction_type = "INCOME" if raw.get("type") == "INFLOW" else "EXPENSE"
    merchant = raw.get("merchant") or {}
    return {
        "transaction_id": new_id("txn"),
        "family_id": account.get("family_id"),
        "user_id": account.get("user_id"),
        "account_id": account["account_id"],
        "category_id": None,
        "amount": signed_amount(float(raw.get("amount") or 0), transaction_type),
        "type": transaction_type,
        "description": raw.get("description") or "",
        "date": _parse_date(raw.get("value_date") or raw.get("date") or utc_now()),
        "source": SOURCE_BELVO,
        "external_id": raw["id"],
        "merchant_info": {"name": merchant.get("name")} if merchant.get("name") else None,
        "created_at": utc_now(),
    }


class BankAccountManager:
    def __init__(self, db_manager=None, belvo_client=None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.belvo_client = belvo_client or globals()["belvo_client"]
        self.logger = logger

    @property
    def accounts(self):
        return self.db_manager.get_collection("bank_accounts")

    @property
    def transactions(self):
        return self.db_manager.get_collection("transactions")

    async def list_accounts(self, user_id: str) -> List[Dict[str, Any]]:
        accounts = await self.accounts.find({"user_id": user_id, "is_active": True}).to_list(length=None)
        for account in accounts:
            account["transaction_count"] = await self.transactions.count_documents(
                {"account_id": account["account_id"]}
            )
        return accounts

    async def _import_transactions(self, account: Dict[str, Any], raw_transactions: List[Dict[str, Any]]) -> int:
        imported = 0
        for raw in raw_transactions:
            if not raw.get("id"):
                continue
            try:
                await self.transactions.insert_one(map_provider_transaction(raw, account))
                imported += 1
            except DuplicateKeyError:
                continue
        return imported

    async def _upsert_account(
        self, user_id: str, family_id: str, link_id: str, raw: Dict[str, Any], institution: str
    ) -> Dict[str, Any]:
        now = utc_now()
        balance = (raw.get("balance") or {}).get("current", 0)
        await self.accounts.update_one(
            {"external_account_id": raw["id"]},
            {
                "$set": {
                    "user_id": user_id,
                    "family_id": family_id,
                    "external_link_id": link_id,
                    "institution_name": (raw.get("institution") or {}).get("name") or institution,
                    "account_number": raw.get("number"),
                    "account_type": raw.get("type") or raw.get("category"),
                    "balance": balance,
                    "currency": raw.get("currency"),
                    "is_active": True,
                    "last_sync_at": now,
                },
                "$setOnInsert": {"account_id": new_id("acc"), "created_at": now},
            },
            upsert=True,
        )
        return await self.accounts.find_one({"external_account_id": raw["id"]})

    async def link_institution(
        self, user_id: str, family_id: str, institution: str, username: str, password: str
    ) -> Dict[str, Any]:
        """
        Link an institution, import its accounts and the last 90 days of transactions.

        Raises:
            UpstreamFailure: If the banking provider rejects or fails a request.
        """
        link = await self.belvo_client.create_link(institution, username, password)
        link_id = link["id"]
        raw_accounts = await self.belvo_client.get_accounts(link_id)

        accounts_by_external_id = {}
        for raw in raw_accounts:
            account = await self._upsert_account(user_id, family_id, link_id, raw, institution)
            accounts_by_external_id[raw["id"]] = account

        today = utc_now().date()
        raw_transactions = await self.belvo_client.get_transactions(
            link_id, today - timedelta(days=INITIAL_SYNC_DAYS), today
        )
        imported = 0
        for external_account_id, account in accounts_by_external_id.items():
            own = [t for t in raw_transactions if (t.get("account") or {}).get("id") == external_account_id]
            imported += await self._import_transactions(account, own)

        self.logger.info(
            "Linked %s for user %s: %d accounts, %d transactions", institution, user_id, len(raw_accounts), imported
        )
        return {
            "link": {"id": link_id, "institution": institution, "status": link.get("status", "valid")},
            "accounts": len(raw_accounts),
            "transactions": imported,
        }

    async def _get_own_account(self, user_id: str, account_id: str) -> Dict[str, Any]:
        account = await self.accounts.find_one({"account_id": account_id, "user_id": user_id, "is_active": True})
        if not account:
            raise NotFound("Bank account not found", "ACCOUNT_NOT_FOUND", {"account_id": account_id})
        return account

    async def refresh_account(self, user_id: str, account_id: str) -> Dict[str, Any]:
        """
        Ask the provider to refresh the account's link, then import transactions since the last sync.

        Raises:
            NotFound: If the account is not one of the user's active accounts.
            UpstreamFailure: If the banking provider rejects or fails a request.
        """
        account = await self._get_own_account(user_id, account_id)
        link_id = account["external_link_id"]
        await self.belvo_client.refresh_link(link_id)

        today = utc_now().date()
        last_sync = account.get("last_sync_at")
        date_from = (
            ensure_timezone_aware(last_sync).date() - timedelta(days=1)
            if last_sync
            else today - timedelta(days=INITIAL_SYNC_DAYS)
        )
        raw_transactions = await self.belvo_client.get_transactions(link_id, date_from, today)
        own = [t for t in raw_transactions if (t.get("account") or {}).get("id") == account["external_account_id"]]
        imported = await self._import_transactions(account, own)

        await self.accounts.update_one({"account_id": account_id}, {"$set": {"last_sync_at": utc_now()}})
        self.logger.info("Refreshed account %s: %d new transactions", account_id, imported)
        return {"account_id": account_id, "transactions": imported}

    async def unlink_account(self, user_id: str, account_id: str) -> int:
        """
        Delete the provider link behind an account and deactivate every account on that link.

        Synced transactions are kept. Returns the number of accounts deactivated.
        """
        account = await self._get_own_account(user_id, account_id)
        link_id = account["external_link_id"]
        await self.belvo_client.delete_link(link_id)
        result = await self.accounts.update_many(
            {"external_link_id": link_id, "user_id": user_id, "is_active": True},
            {"$set": {"is_active": False, "unlinked_at": utc_now()}},
        )
        self.logger.info("Unlinked %d accounts on link %s for user %s", result.modified_count, link_id, user_id)
        return result.modified_count

    async def handle_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a provider webhook. Unknown webhook types are acknowledged and ignored.

        Raises:
            ValidationError: If ``webhook_type`` or ``data`` is missing.
        """
        webhook_type = payload.get("webhook_type")
        data = payload.get("data")
        if not webhook_type or not data:
            raise ValidationError("Invalid webhook payload", field="webhook_type")
        if payload.get("link_id") and not data.get("link_id"):
            data = {**data, "link_id": payload["link_id"]}

        if webhook_type == WEBHOOK_TRANSACTIONS:
            return {"processed": await self._handle_transactions_webhook(data)}
        if webhook_type == WEBHOOK_ACCOUNTS:
            return {"processed": await self._handle_accounts_webhook(data)}

        self.logger.info("Ignoring unhandled webhook type %s", webhook_type)
        return {"processed": 0}

    async def _handle_transactions_webhook(self, data: Dict[str, Any]) -> int:
        link_id = data.get("link_id")
        query: Dict[str, Any] = {"external_link_id": link_id}
        if data.get("account_id"):
            query["external_account_id"] = data["account_id"]
        account: Optional[Dict[str, Any]] = await self.accounts.find_one(query)
        if not account:
            self.logger.error("No bank account found for link %s", link_id)
            return 0

        imported = await self._import_transactions(account, data.get("transactions") or [])
        await self.accounts.update_one({"account_id": account["account_id"]}, {"$set": {"last_sync_at": utc_now()}})
        self.logger.info("Webhook imported %d transactions for account %s", imported, account["account_id"])
        return imported

    async def _handle_accounts_webhook(self, data: Dict[str, Any]) -> int:
        link_id = data.get("link_id")
        updated = 0
        for raw in data.get("accounts") or []:
            result = await self.accounts.update_many(
                {"external_link_id": link_id, "external_account_id": raw.get("id")},
                {"$set": {"balance": (raw.get("balance") or {}).get("current", 0), "last_sync_at": utc_now()}},
            )
            updated += result.modified_count
        return updated


bank_account_manager = BankAccountManager()
