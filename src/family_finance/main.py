"""
Main application module for the Family Finance API.

Sets up the FastAPI application with lifespan management (MongoDB connection and index
creation, global category seeding), the error handlers and every router.
"""

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI
import uvicorn

from family_finance import __version__
from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.category_manager import category_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.redis_manager import redis_manager
from family_finance.routes.accounts import router as accounts_router
from family_finance.routes.analytics import router as analytics_router
from family_finance.routes.auth import router as auth_router
from family_finance.routes.budgets import router as budgets_router
from family_finance.routes.categories import router as categories_router
from family_finance.routes.cron import router as cron_router
from family_finance.routes.family import router as family_router
from family_finance.routes.main import router as main_router
from family_finance.routes.reminders import router as reminders_router
from family_finance.routes.transactions import router as transactions_router
from family_finance.utils.error_handling import register_exception_handlers

logger = get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Connect MongoDB, ensure indexes and seed categories on startup; release connections on shutdown."""
    startup_start_time = time.time()
    logger.info("Starting %s (%s)", settings.APP_NAME, "production" if settings.is_production else "development")

    await db_manager.connect()
    await db_manager.create_indexes()
    await category_manager.seed_global_categories()
    logger.info("Startup completed in %.3fs", time.time() - startup_start_time)

    try:
        yield
    finally:
        logger.info("Shutting down %s", settings.APP_NAME)
        await redis_manager.close()
        await db_manager.disconnect()


app = FastAPI(
    title="Family Finance API",
    description="Multi-tenant family budgeting, reminders and bank transaction tracking.",
    version=__version__,
    lifespan=lifespan,
)

register_exception_handlers(app)

routers_config = [
    ("main", main_router),
    ("auth", auth_router),
    ("families", family_router),
    ("budgets", budgets_router),
    ("categories", categories_router),
    ("reminders", reminders_router),
    ("transactions", transactions_router),
    ("accounts", accounts_router),
    ("analytics", analytics_router),
    ("cron", cron_router),
]

for router_name, router in routers_config:
    app.include_router(router)
    logger.debug("Included %s router", router_name)


if __name__ == "__main__":
    uvicorn.run("family_finance.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
