"""
Route-level tests: cron secret guard, permission dependencies and error rendering.

Each test mounts the router under test on a bare FastAPI app with the application's
exception handlers, so no database or Redis connection is opened.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient
import pytest

from family_finance.managers.budget_manager import GenerationResult
from family_finance.managers.email_job_manager import ProcessResult
from family_finance.managers.family_context import FamilyContext, FamilyInfo, ScopedFamilyAccess
from family_finance.managers.reminder_manager import SweepSummary
from family_finance.routes.accounts.routes import router as accounts_router
from family_finance.routes.analytics.routes import router as analytics_router
from family_finance.routes.auth.dependencies import get_current_identity
from family_finance.routes.budgets.routes import router as budgets_router
from family_finance.routes.categories.routes import router as categories_router
from family_finance.routes.cron.routes import router as cron_router
from family_finance.routes.family.dependencies import get_family_context_dep
from family_finance.routes.family.routes import router as family_router
from family_finance.utils.error_handling import LastAdminRemoval, NotFound, register_exception_handlers

CRON_SECRET = "test-cron-secret-value"
USER = {"user_id": "user_alice", "email": "alice@example.com", "name": "Alice"}


def _app(*routers):
    app = FastAPI()
    register_exception_handlers(app)
    for router in routers:
        app.include_router(router)
    return app


def _context(role):
    return FamilyContext(user=USER, family=FamilyInfo(id="fam_home", name="Home", role=role))


class TestCronRoutes:
    @pytest.fixture
    def client(self):
        return TestClient(_app(cron_router))

    def test_missing_secret_is_401(self, client):
        with patch("family_finance.routes.cron.routes.reminder_manager") as reminders:
            reminders.check_reminders = AsyncMock()
            response = client.post("/cron/check-reminders")

        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_CRON_SECRET"
        reminders.check_reminders.assert_not_awaited()

    def test_wrong_secret_is_401(self, client):
        response = client.post("/cron/process-emails", headers={"x-cron-secret": "nope"})
        assert response.status_code == 401

    def test_check_reminders(self, client):
        summary = SweepSummary(
            timestamp=datetime(2024, 3, 10, tzinfo=timezone.utc), reminders_processed=2, email_jobs_created=3
        )
        with patch("family_finance.routes.cron.routes.reminder_manager") as reminders:
            reminders.check_reminders = AsyncMock(return_value=summary)
            response = client.post("/cron/check-reminders", headers={"x-cron-secret": CRON_SECRET})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["reminders_processed"] == 2
        assert body["email_jobs_created"] == 3
        assert body["errors"] == 0

    def test_process_emails_with_bearer(self, client):
        with patch("family_finance.routes.cron.routes.email_job_manager") as jobs:
            jobs.process_pending = AsyncMock(return_value=ProcessResult(processed=1, succeeded=1))
            response = client.post("/cron/process-emails", headers={"Authorization": f"Bearer {CRON_SECRET}"})

        assert response.status_code == 200
        assert response.json()["succeeded"] == 1

    def test_generate_monthly_budgets(self, client):
        summary = {"period": "2024-03", "generated_count": 4, "skipped_count": 1, "results": []}
        with patch("family_finance.routes.cron.routes.budget_manager") as budgets:
            budgets.generate_all_families = AsyncMock(return_value=summary)
            response = client.post("/cron/generate-monthly-budgets", headers={"x-cron-secret": CRON_SECRET})

        assert response.json() == {"success": True, **summary}


class TestBudgetPermissions:
    def _client(self, role):
        app = _app(budgets_router)
        app.dependency_overrides[get_family_context_dep] = lambda: _context(role)
        return TestClient(app)

    def test_viewer_cannot_generate(self):
        with patch("family_finance.routes.budgets.routes.budget_manager") as budgets:
            budgets.generate_for_period = AsyncMock()
            response = self._client("VIEWER").post("/budgets/generate", json={"year": 2024, "month": 3})

        assert response.status_code == 403
        assert response.json()["message"] == "Insufficient permissions"
        budgets.generate_for_period.assert_not_awaited()

    def test_member_generates(self):
        result = GenerationResult(
            generated=[{"budget_id": "bud_1", "category_id": "cat_food"}],
            skipped=[{"template_id": "tpl_rent", "category_id": "cat_rent", "reason": "Budget already exists"}],
        )
        with patch("family_finance.routes.budgets.routes.budget_manager") as budgets:
            budgets.generate_for_period = AsyncMock(return_value=result)
            response = self._client("MEMBER").post("/budgets/generate", json={"year": 2024, "month": 3})

        assert response.status_code == 200
        assert response.json()["message"] == "Generated 1 budgets, skipped 1"
        budgets.generate_for_period.assert_awaited_once_with("fam_home", "user_alice", 2024, 3)

    def test_member_cannot_delete(self):
        response = self._client("MEMBER").delete("/budgets/bud_1")
        assert response.status_code == 403


class TestScopedFamilyRoutes:
    @pytest.fixture
    def app(self):
        app = _app(family_router)
        app.dependency_overrides[get_current_identity] = lambda: {"sub": "user_alice", "email": USER["email"]}
        return app

    def test_non_member_gets_uniform_denial(self, app):
        resolver = MagicMock()
        resolver.validate_family_permission = AsyncMock(return_value=None)
        with patch("family_finance.managers.family_context.family_access_resolver", resolver):
            response = TestClient(app).get("/families/fam_other/members")

        assert response.status_code == 403
        assert response.json() == {
            "error": "INSUFFICIENT_PERMISSIONS",
            "message": "Insufficient permissions",
            "details": {},
        }

    def test_last_admin_removal_is_409(self, app):
        access = ScopedFamilyAccess(
            user=USER, family={"family_id": "fam_home"}, membership={"role": "ADMIN"}
        )
        resolver = MagicMock()
        resolver.validate_family_permission = AsyncMock(return_value=access)
        with patch("family_finance.managers.family_context.family_access_resolver", resolver), patch(
            "family_finance.routes.family.routes.family_manager"
        ) as families:
            families.remove_member = AsyncMock(
                side_effect=LastAdminRemoval("Cannot remove the last admin of the family", "fam_home", "mem_2")
            )
            response = TestClient(app).delete("/families/fam_home/members/mem_2")

        assert response.status_code == 409
        assert response.json()["error"] == "LAST_ADMIN_REQUIRED"

    def test_missing_token_is_401(self):
        response = TestClient(_app(family_router)).get("/families/current")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"


class TestFamilyReadRoutes:
    def _client(self, role, *routers):
        app = _app(*routers)
        app.dependency_overrides[get_family_context_dep] = lambda: _context(role)
        return TestClient(app)

    def test_viewer_reads_overview(self):
        overview = {"total_balance": 1300.0, "recent_transactions": [{"_id": "oid", "transaction_id": "txn_1"}]}
        with patch("family_finance.routes.analytics.routes.analytics_manager") as analytics:
            analytics.overview = AsyncMock(return_value=overview)
            response = self._client("VIEWER", analytics_router).get("/analytics/overview")

        assert response.status_code == 200
        assert response.json() == {"total_balance": 1300.0, "recent_transactions": [{"transaction_id": "txn_1"}]}
        analytics.overview.assert_awaited_once_with("fam_home")

    def test_viewer_lists_categories(self):
        categories = [{"category_id": "cat_food", "name": "Food & Dining", "family_id": None, "is_custom": False}]
        with patch("family_finance.routes.categories.routes.category_manager") as manager:
            manager.list_categories = AsyncMock(return_value=categories)
            response = self._client("VIEWER", categories_router).get("/categories")

        assert response.status_code == 200
        assert response.json() == {"categories": categories}
        manager.list_categories.assert_awaited_once_with("fam_home")

    def test_viewer_cannot_unlink_account(self):
        with patch("family_finance.routes.accounts.routes.bank_account_manager") as accounts:
            accounts.unlink_account = AsyncMock()
            response = self._client("VIEWER", accounts_router).delete("/accounts/acc_1")

        assert response.status_code == 403
        accounts.unlink_account.assert_not_awaited()

    def test_member_unlinks_account(self):
        with patch("family_finance.routes.accounts.routes.bank_account_manager") as accounts:
            accounts.unlink_account = AsyncMock(return_value=2)
            response = self._client("MEMBER", accounts_router).delete("/accounts/acc_1")

        assert response.status_code == 200
        assert response.json() == {"success": True, "accounts_deactivated": 2}
        accounts.unlink_account.assert_awaited_once_with("user_alice", "acc_1")

    def test_unknown_account_is_404(self):
        with patch("family_finance.routes.accounts.routes.bank_account_manager") as accounts:
            accounts.unlink_account = AsyncMock(
                side_effect=NotFound("Bank account not found", "ACCOUNT_NOT_FOUND", {"account_id": "acc_x"})
            )
            response = self._client("MEMBER", accounts_router).delete("/accounts/acc_x")

        assert response.status_code == 404
        assert response.json()["error"] == "ACCOUNT_NOT_FOUND"
