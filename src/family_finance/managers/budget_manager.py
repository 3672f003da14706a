"""
BudgetManager: budget templates, per-period budget generation, spending and rollover.

Generation is idempotent per ``(family_id, category_id, start_date)``. The application checks
for an existing budget in the period first, and the ``uniq_budget_period`` index rejects the
second writer of a concurrent pair; both outcomes are reported as a skip.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from family_finance.database import db_manager
from family_finance.managers.family_context import new_id
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import add_days, add_months, month_window, utc_now
from family_finance.utils.error_handling import (
    BudgetAlreadyExists,
    Conflict,
    NotFound,
    TransactionError,
    ValidationError,
)

logger = get_logger(prefix="[BudgetManager]")

BUDGET_PERIODS = ("WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY")
DEFAULT_ALERT_THRESHOLD = 80

SKIP_ALREADY_EXISTS = "Budget already exists for this period"
SKIP_GENERATION_ERROR = "Error during generation"


@dataclass
class GenerationResult:
    generated: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)


def _current_period(year: Optional[int], month: Optional[int]):
    now = utc_now()
    return year or now.year, month or now.month


def period_end(start: datetime, period: str) -> datetime:
    """Last day (at midnight) of the budget that starts at ``start``."""
    if period == "WEEKLY":
        return add_days(start, 7)
    if period == "QUARTERLY":
        return add_days(add_months(start, 3), -1)
    if period == "YEARLY":
        return datetime(start.year, 12, 31, tzinfo=timezone.utc)
    return month_window(start.year, start.month)[1]


def _validate_limit(value: Any, field_name: str = "monthly_limit") -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Limit must be a number", field=field_name, value=value)
    if amount <= 0:
        raise ValidationError("Limit must be greater than zero", field=field_name, value=value, constraint="> 0")
    return amount


def _validate_threshold(value: Any) -> int:
    if value is None:
        return DEFAULT_ALERT_THRESHOLD
    if not isinstance(value, (int, float)) or not 0 <= value <= 100:
        raise ValidationError("Alert threshold must be between 0 and 100", field="alert_threshold", value=value)
    return int(value)


def _validate_period(value: Optional[str]) -> str:
    period = (value or "MONTHLY").upper()
    if period not in BUDGET_PERIODS:
        raise ValidationError("Invalid budget period", field="period", value=value, constraint=", ".join(BUDGET_PERIODS))
    return period


class BudgetManager:
    """Templates, budgets and monthly generation for a family."""

    def __init__(self, db_manager=None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.logger = logger

    @property
    def templates(self):
        return self.db_manager.get_collection("budget_templates")

    @property
    def budgets(self):
        return self.db_manager.get_collection("budgets")

    # --- Generation ---

    def _eligible_template_filter(self, family_id: str) -> Dict[str, Any]:
        return {"family_id": family_id, "is_active": True, "auto_generate": True}

    async def _budget_in_window(self, family_id: str, category_id: str, start: datetime, end: datetime):
        return await self.budgets.find_one(
            {"family_id": family_id, "category_id": category_id, "start_date": {"$gte": start, "$lte": end}}
        )

    def _budget_from_template(
        self, template: Dict[str, Any], start: datetime, end: datetime, user_id: Optional[str]
    ) -> Dict[str, Any]:
        now = utc_now()
        return {
            "budget_id": new_id("bud"),
            "family_id": template["family_id"],
            "category_id": template["category_id"],
            "name": template["name"],
            "monthly_limit": template["monthly_limit"],
            "period": template.get("period", "MONTHLY"),
            "start_date": start,
            "end_date": end,
            "alert_threshold": template.get("alert_threshold", DEFAULT_ALERT_THRESHOLD),
            "template_id": template["template_id"],
            "rollover_amount": 0.0,
            "is_active": True,
            "created_by": user_id or template.get("created_by"),
            "created_at": now,
            "updated_at": now,
        }

    async def generate_for_period(
        self, family_id: str, user_id: Optional[str], year: Optional[int] = None, month: Optional[int] = None
    ) -> GenerationResult:
        """
        Create this month's budget for every active auto-generate template.

        Templates whose category already has a budget starting in the month are skipped, as is
        any template whose insert fails; the remaining templates are still processed.
        """
        year, month = _current_period(year, month)
        start, end = month_window(year, month)
        result = GenerationResult()

        templates = await self.templates.find(self._eligible_template_filter(family_id)).to_list(length=None)
        start_time = self.db_manager.log_query_start("budgets", "generate_for_period", {"family_id": family_id})

        for template in templates:
            skip = {"template_id": template["template_id"], "category_id": template["category_id"]}
            try:
                if await self._budget_in_window(family_id, template["category_id"], start, end):
                    result.skipped.append({**skip, "reason": SKIP_ALREADY_EXISTS})
                    continue

                budget = self._budget_from_template(template, start, end, user_id)
                try:
                    await self.budgets.insert_one(budget)
                except DuplicateKeyError:
                    result.skipped.append({**skip, "reason": SKIP_ALREADY_EXISTS})
                    continue

                await self.templates.update_one(
                    {"template_id": template["template_id"]}, {"$set": {"last_generated": utc_now()}}
                )
                result.generated.append(budget)
            except Exception as e:
                self.logger.error(
                    "Budget generation failed for template %s in family %s: %s",
                    template.get("template_id"),
                    family_id,
                    e,
                    exc_info=True,
                )
                result.skipped.append({**skip, "reason": SKIP_GENERATION_ERROR})

        self.db_manager.log_query_success(
            "budgets",
            "generate_for_period",
            start_time,
            len(result.generated),
            f"{year}-{month:02d} skipped={len(result.skipped)}",
        )
        return result

    async def generate_from_template(self, family_id: str, user_id: str, template_id: str) -> Dict[str, Any]:
        """
        Generate the current period's budget from one template.

        Raises:
            NotFound: If the template is not an active template of this family.
            BudgetAlreadyExists: If the category already has a budget for the period.
        """
        template = await self.templates.find_one({"template_id": template_id, "family_id": family_id, "is_active": True})
        if not template:
            raise NotFound("Budget template not found", "TEMPLATE_NOT_FOUND", {"template_id": template_id})

        now = utc_now()
        start, month_end = month_window(now.year, now.month)
        end = period_end(start, template.get("period", "MONTHLY"))
        if await self._budget_in_window(family_id, template["category_id"], start, month_end):
            raise BudgetAlreadyExists(SKIP_ALREADY_EXISTS, category_id=template["category_id"], start_date=start)

        budget = self._budget_from_template(template, start, end, user_id)
        try:
            await self.budgets.insert_one(budget)
        except DuplicateKeyError as e:
            raise BudgetAlreadyExists(SKIP_ALREADY_EXISTS, category_id=template["category_id"], start_date=start) from e

        await self.templates.update_one({"template_id": template_id}, {"$set": {"last_generated": now}})
        self.logger.info("Generated budget %s from template %s", budget["budget_id"], template_id)
        return budget

    async def find_missing_budgets(
        self, family_id: str, year: Optional[int] = None, month: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Eligible templates with no budget in the month. Read-only."""
        year, month = _current_period(year, month)
        start, end = month_window(year, month)
        templates = await self.templates.find(self._eligible_template_filter(family_id)).to_list(length=None)
        missing = []
        for template in templates:
            if not await self._budget_in_window(family_id, template["category_id"], start, end):
                missing.append(template)
        return missing

    async def generate_all_families(self, year: Optional[int] = None, month: Optional[int] = None) -> Dict[str, Any]:
        """Run ``generate_for_period`` for every family with eligible templates."""
        year, month = _current_period(year, month)
        family_ids = await self.templates.distinct("family_id", {"is_active": True, "auto_generate": True})
        summary = {
            "timestamp": utc_now(),
            "period": f"{year}-{month:02d}",
            "total_templates": 0,
            "generated_count": 0,
            "skipped_count": 0,
            "results": [],
        }
        for family_id in family_ids:
            result = await self.generate_for_period(family_id, None, year, month)
            summary["total_templates"] += len(result.generated) + len(result.skipped)
            summary["generated_count"] += len(result.generated)
            summary["skipped_count"] += len(result.skipped)
            summary["results"].append(
                {"family_id": family_id, "generated": len(result.generated), "skipped": result.skipped}
            )
        self.logger.info(
            "Monthly generation %s: %d generated, %d skipped across %d families",
            summary["period"],
            summary["generated_count"],
            summary["skipped_count"],
            len(family_ids),
        )
        return summary

    # --- Templates ---

    async def _ensure_category(self, family_id: str, category_id: str) -> Dict[str, Any]:
        category = await self.db_manager.get_collection("categories").find_one(
            {"category_id": category_id, "family_id": {"$in": [None, family_id]}}
        )
        if not category:
            raise ValidationError("Category not found", field="category_id", value=category_id)
        return category

    async def create_template(self, family_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        category_id = data.get("category_id")
        await self._ensure_category(family_id, category_id)
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Template name is required", field="name")

        now = utc_now()
        template = {
            "template_id": new_id("tpl"),
            "family_id": family_id,
            "category_id": category_id,
            "name": name,
            "monthly_limit": _validate_limit(data.get("monthly_limit")),
            "period": _validate_period(data.get("period")),
            "alert_threshold": _validate_threshold(data.get("alert_threshold")),
            "auto_generate": bool(data.get("auto_generate", True)),
            "is_active": True,
            "last_generated": None,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.templates.insert_one(template)
        except DuplicateKeyError as e:
            raise Conflict(
                "A budget template already exists for this category", "TEMPLATE_EXISTS", {"category_id": category_id}
            ) from e
        self.logger.info("Created budget template %s in family %s", template["template_id"], family_id)
        return template

    async def list_templates(self, family_id: str) -> List[Dict[str, Any]]:
        cursor = self.templates.find({"family_id": family_id, "is_active": True}).sort("name", ASCENDING)
        return await cursor.to_list(length=None)

    async def update_template(self, family_id: str, template_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        if "name" in data and data["name"] is not None:
            updates["name"] = data["name"].strip()
        if data.get("monthly_limit") is not None:
            updates["monthly_limit"] = _validate_limit(data["monthly_limit"])
        if data.get("period") is not None:
            updates["period"] = _validate_period(data["period"])
        if data.get("alert_threshold") is not None:
            updates["alert_threshold"] = _validate_threshold(data["alert_threshold"])
        if data.get("auto_generate") is not None:
            updates["auto_generate"] = bool(data["auto_generate"])
        updates["updated_at"] = utc_now()

        result = await self.templates.update_one(
            {"template_id": template_id, "family_id": family_id, "is_active": True}, {"$set": updates}
        )
        if result.matched_count == 0:
            raise NotFound("Budget template not found", "TEMPLATE_NOT_FOUND", {"template_id": template_id})
        return await self.templates.find_one({"template_id": template_id})

    async def delete_template(self, family_id: str, template_id: str) -> None:
        result = await self.templates.update_one(
            {"template_id": template_id, "family_id": family_id, "is_active": True},
            {"$set": {"is_active": False, "updated_at": utc_now()}},
        )
        if result.matched_count == 0:
            raise NotFound("Budget template not found", "TEMPLATE_NOT_FOUND", {"template_id": template_id})

    # --- Budgets ---

    async def _spent(self, family_id: str, category_id: str, start: datetime, end: datetime) -> float:
        """Sum of |amount| of EXPENSE transactions dated within the budget's days."""
        pipeline = [
            {
                "$match": {
                    "family_id": family_id,
                    "category_id": category_id,
                    "type": "EXPENSE",
                    "date": {"$gte": start, "$lt": end + timedelta(days=1)},
                }
            },
            {"$group": {"_id": None, "total": {"$sum": {"$abs": "$amount"}}}},
        ]
        rows = await self.db_manager.get_collection("transactions").aggregate(pipeline).to_list(length=1)
        return float(rows[0]["total"]) if rows else 0.0

    async def enrich_budget(self, budget: Dict[str, Any]) -> Dict[str, Any]:
        spent = await self._spent(budget["family_id"], budget["category_id"], budget["start_date"], budget["end_date"])
        effective_limit = float(budget["monthly_limit"]) + float(budget.get("rollover_amount") or 0)
        percentage = round(spent / effective_limit * 100) if effective_limit > 0 else 0
        threshold = budget.get("alert_threshold", DEFAULT_ALERT_THRESHOLD)
        return {
            **budget,
            "current_spent": spent,
            "effective_limit": effective_limit,
            "remaining": effective_limit - spent,
            "percentage_used": percentage,
            "is_over_budget": spent > effective_limit,
            "is_near_limit": percentage >= threshold,
        }

    async def create_budget(self, family_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Manual budget for the current month."""
        category_id = data.get("category_id")
        await self._ensure_category(family_id, category_id)
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Budget name is required", field="name")

        now = utc_now()
        start, end = month_window(now.year, now.month)
        budget = {
            "budget_id": new_id("bud"),
            "family_id": family_id,
            "category_id": category_id,
            "name": name,
            "monthly_limit": _validate_limit(data.get("monthly_limit")),
            "period": "MONTHLY",
            "start_date": start,
            "end_date": end,
            "alert_threshold": _validate_threshold(data.get("alert_threshold")),
            "template_id": None,
            "rollover_amount": 0.0,
            "is_active": True,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }
        if await self._budget_in_window(family_id, category_id, start, end):
            raise BudgetAlreadyExists(SKIP_ALREADY_EXISTS, category_id=category_id, start_date=start)
        try:
            await self.budgets.insert_one(budget)
        except DuplicateKeyError as e:
            raise BudgetAlreadyExists(SKIP_ALREADY_EXISTS, category_id=category_id, start_date=start) from e
        return await self.enrich_budget(budget)

    async def list_budgets(
        self, family_id: str, year: Optional[int] = None, month: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"family_id": family_id, "is_active": True}
        if year and month:
            start, end = month_window(year, month)
            query["start_date"] = {"$gte": start, "$lte": end}
        budgets = await self.budgets.find(query).sort("start_date", ASCENDING).to_list(length=None)
        return [await self.enrich_budget(b) for b in budgets]

    async def get_budget(self, family_id: str, budget_id: str) -> Dict[str, Any]:
        budget = await self.budgets.find_one({"budget_id": budget_id, "family_id": family_id, "is_active": True})
        if not budget:
            raise NotFound("Budget not found", "BUDGET_NOT_FOUND", {"budget_id": budget_id})
        return await self.enrich_budget(budget)

    async def update_budget(self, family_id: str, budget_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        updates: Dict[str, Any] = {"updated_at": utc_now()}
        if data.get("name") is not None:
            updates["name"] = data["name"].strip()
        if data.get("monthly_limit") is not None:
            updates["monthly_limit"] = _validate_limit(data["monthly_limit"])
        if data.get("alert_threshold") is not None:
            updates["alert_threshold"] = _validate_threshold(data["alert_threshold"])

        result = await self.budgets.update_one(
            {"budget_id": budget_id, "family_id": family_id, "is_active": True}, {"$set": updates}
        )
        if result.matched_count == 0:
            raise NotFound("Budget not found", "BUDGET_NOT_FOUND", {"budget_id": budget_id})
        return await self.get_budget(family_id, budget_id)

    async def delete_budget(self, family_id: str, budget_id: str) -> None:
        result = await self.budgets.update_one(
            {"budget_id": budget_id, "family_id": family_id, "is_active": True},
            {"$set": {"is_active": False, "updated_at": utc_now()}},
        )
        if result.matched_count == 0:
            raise NotFound("Budget not found", "BUDGET_NOT_FOUND", {"budget_id": budget_id})
        self.logger.info("Budget %s deleted in family %s", budget_id, family_id)

    # --- Rollover ---

    async def calculate_rollover(self, family_id: str, year: int, month: int, apply: bool = False) -> List[Dict[str, Any]]:
        """
        Leftover per category for a month.

        With ``apply``, each positive rollover is written to next month's budget for the same
        category when that budget exists.
        """
        start, end = month_window(year, month)
        next_start, next_end = month_window(*self._next_month(year, month))
        budgets = await self.budgets.find(
            {"family_id": family_id, "is_active": True, "start_date": {"$gte": start, "$lte": end}}
        ).to_list(length=None)

        rollovers = []
        for budget in budgets:
            spent = await self._spent(family_id, budget["category_id"], budget["start_date"], budget["end_date"])
            remaining = float(budget["monthly_limit"]) + float(budget.get("rollover_amount") or 0) - spent
            entry = {
                "category_id": budget["category_id"],
                "budget_id": budget["budget_id"],
                "remaining": remaining,
                "rollover": max(0.0, remaining),
                "deficit": max(0.0, -remaining),
                "applied": False,
            }
            if apply and entry["rollover"] > 0:
                updated = await self.budgets.update_one(
                    {
                        "family_id": family_id,
                        "category_id": budget["category_id"],
                        "is_active": True,
                        "start_date": {"$gte": next_start, "$lte": next_end},
                    },
                    {"$set": {"rollover_amount": entry["rollover"], "updated_at": utc_now()}},
                )
                entry["applied"] = updated.modified_count > 0
            rollovers.append(entry)
        return rollovers

    @staticmethod
    def _next_month(year: int, month: int):
        return (year + 1, 1) if month == 12 else (year, month + 1)

    async def transfer_rollover(
        self, family_id: str, from_category_id: str, to_category_id: str, amount: float, year: int, month: int
    ) -> Dict[str, Any]:
        """
        Move rollover between two budgets of the same month.

        Raises:
            ValidationError: If the amount is not positive or the source holds too little rollover.
            NotFound: If either budget does not exist in the month.
        """
        amount = _validate_limit(amount, "amount")
        if from_category_id == to_category_id:
            raise ValidationError("Source and target categories must differ", field="to_category_id")
        start, end = month_window(year, month)
        window = {"family_id": family_id, "is_active": True, "start_date": {"$gte": start, "$lte": end}}

        async with self.db_manager.transaction("transfer_rollover") as session:
            source = await self.budgets.find_one({**window, "category_id": from_category_id}, session=session)
            target = await self.budgets.find_one({**window, "category_id": to_category_id}, session=session)
            if not source or not target:
                raise NotFound("Budget not found for the given month", "BUDGET_NOT_FOUND")
            if float(source.get("rollover_amount") or 0) < amount:
                raise ValidationError(
                    "Insufficient rollover amount", field="amount", value=amount, constraint="<= source rollover"
                )

            debit = await self.budgets.update_one(
                {"budget_id": source["budget_id"], "rollover_amount": {"$gte": amount}},
                {"$inc": {"rollover_amount": -amount}},
                session=session,
            )
            if debit.modified_count != 1:
                raise ValidationError("Insufficient rollover amount", field="amount", value=amount)
            try:
                await self.budgets.update_one(
                    {"budget_id": target["budget_id"]}, {"$inc": {"rollover_amount": amount}}, session=session
                )
            except PyMongoError as e:
                if session is None:
                    await self.budgets.update_one(
                        {"budget_id": source["budget_id"]}, {"$inc": {"rollover_amount": amount}}
                    )
                raise TransactionError(
                    "Failed to transfer rollover", operation="transfer_rollover", rollback_successful=True
                ) from e

        self.logger.info(
            "Transferred %.2f rollover from %s to %s in family %s", amount, from_category_id, to_category_id, family_id
        )
        return {"from_budget_id": source["budget_id"], "to_budget_id": target["budget_id"], "amount": amount}


budget_manager = BudgetManager()
