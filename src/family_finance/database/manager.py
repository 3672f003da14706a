"""Database module for the Family Finance API."""

import asyncio
from contextlib import asynccontextmanager
import time
from typing import Any, AsyncIterator, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from family_finance.config import settings
from family_finance.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")

SENSITIVE_QUERY_KEYS = ("password", "password_hash", "token", "token_hash", "secret")

# collection -> list of (keys, options)
INDEX_DEFINITIONS: Dict[str, list] = {
    "users": [
        ("email", {"unique": True}),
        ("user_id", {"unique": True}),
    ],
    "families": [
        ("family_id", {"unique": True}),
    ],
    "family_members": [
        ("member_id", {"unique": True}),
        (
            [("family_id", ASCENDING), ("user_id", ASCENDING)],
            {
                "unique": True,
                "partialFilterExpression": {"is_active": True},
                "name": "uniq_active_membership",
            },
        ),
        (
            "user_id",
            {
                "unique": True,
                "partialFilterExpression": {"auto_provisioned": True, "is_active": True},
                "name": "uniq_auto_provisioned_family",
            },
        ),
        ([("user_id", ASCENDING), ("is_active", ASCENDING), ("joined_at", ASCENDING)], {}),
        ([("family_id", ASCENDING), ("role", ASCENDING), ("is_active", ASCENDING)], {}),
    ],
    "family_invitations": [
        ("token", {"unique": True}),
        ("invitation_id", {"unique": True}),
        ([("family_id", ASCENDING), ("email", ASCENDING)], {}),
    ],
    "categories": [
        ("category_id", {"unique": True}),
        ([("family_id", ASCENDING), ("name", ASCENDING)], {"unique": True, "name": "uniq_category_name"}),
    ],
    "budget_templates": [
        ("template_id", {"unique": True}),
        ([("family_id", ASCENDING), ("category_id", ASCENDING)], {"unique": True, "name": "uniq_template_category"}),
        ([("is_active", ASCENDING), ("auto_generate", ASCENDING)], {}),
    ],
    "budgets": [
        ("budget_id", {"unique": True}),
        (
            [("family_id", ASCENDING), ("category_id", ASCENDING), ("start_date", ASCENDING)],
            {"unique": True, "name": "uniq_budget_period"},
        ),
    ],
    "reminders": [
        ("reminder_id", {"unique": True}),
        ([("is_active", ASCENDING), ("is_completed", ASCENDING), ("due_date", ASCENDING)], {}),
        ([("family_id", ASCENDING), ("due_date", ASCENDING)], {}),
    ],
    "transactions": [
        ("transaction_id", {"unique": True}),
        ("external_id", {"unique": True, "sparse": True}),
        ([("family_id", ASCENDING), ("date", DESCENDING)], {}),
        ([("family_id", ASCENDING), ("category_id", ASCENDING), ("type", ASCENDING), ("date", ASCENDING)], {}),
    ],
    "bank_accounts": [
        ("account_id", {"unique": True}),
        ("external_account_id", {"unique": True, "sparse": True}),
        ([("user_id", ASCENDING), ("is_active", ASCENDING)], {}),
    ],
    "email_jobs": [
        ("job_id", {"unique": True}),
        ("dedupe_key", {"unique": True, "sparse": True}),
        ([("status", ASCENDING), ("attempts", ASCENDING), ("created_at", ASCENDING)], {}),
    ],
    "password_reset_tokens": [
        ("token_hash", {"unique": True}),
        ("user_id", {}),
    ],
}


class DatabaseManager:
    """Owns the Motor client for the finance collections and the transaction helper."""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3
        # Set after connect(); True on a replica set or mongos
        self.transactions_supported: Optional[bool] = None

    async def connect(self):
        """Connect with exponential backoff, then check for transaction support."""
        start_time = time.time()
        db_logger.info("Connecting to MongoDB at database %s", settings.MONGODB_DATABASE)

        for attempt in range(self._connection_retries):
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)

                if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
                    connection_string = (
                        f"mongodb://{settings.MONGODB_USERNAME}:"
                        f"{settings.MONGODB_PASSWORD.get_secret_value()}@"
                        f"{settings.MONGODB_URL.replace('mongodb://', '')}"
                    )
                else:
                    connection_string = settings.MONGODB_URL

                self.client = AsyncIOMotorClient(
                    connection_string,
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    maxPoolSize=50,
                    minPoolSize=5,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                await self.client.admin.command("ping")
                self.transactions_supported = await self._detect_transaction_support()

                perf_logger.info("MongoDB connection established in %.3fs", time.time() - start_time)
                db_logger.info(
                    "Connected to MongoDB database: %s (transactions supported: %s)",
                    settings.MONGODB_DATABASE,
                    self.transactions_supported,
                )
                if not self.transactions_supported:
                    db_logger.warning(
                        "MongoDB deployment does not support transactions; multi-document writes use compensating cleanup"
                    )
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def _detect_transaction_support(self) -> bool:
        """Replica set members report ``setName``; mongos reports ``msg == 'isdbgrid'``."""
        try:
            hello = await self.client.admin.command({"hello": 1})
        except PyMongoError as e:
            db_logger.warning("Could not detect transaction support, assuming none: %s", e)
            return False
        return bool(hello.get("setName") or hello.get("msg") == "isdbgrid")

    async def disconnect(self):
        """Close the Motor client."""
        if self.client:
            self.client.close()
            self.client = None
            self.database = None
            db_logger.info("MongoDB client closed")
        else:
            db_logger.warning("Disconnect called without an open MongoDB client")

    async def health_check(self) -> bool:
        """Ping the server; used by ``/health``."""
        if self.client is None:
            health_logger.warning("Health check failed: not connected")
            return False
        try:
            await self.client.admin.command("ping")
            return True
        except (ServerSelectionTimeoutError, ConnectionFailure) as e:
            health_logger.error("Database health check failed: %s", e)
            return False

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Collection handle, or ``RuntimeError`` before ``connect()``."""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        """
        Run a block inside a MongoDB transaction.

        Yields the session to pass to every write. On a deployment without transaction
        support it yields ``None``; callers then perform their own compensating cleanup.
        Any exception raised in the block aborts the transaction and propagates.
        """
        if not self.transactions_supported:
            db_logger.debug("Running %s without a session", operation)
            yield None
            return

        session = await self.client.start_session()
        try:
            async with session.start_transaction():
                yield session
            db_logger.debug("Transaction committed for %s", operation)
        finally:
            await session.end_session()

    async def create_indexes(self):
        """Create all collection indexes, including the uniqueness guards."""
        start_time = time.time()
        db_logger.info("Ensuring indexes on %d collections", len(INDEX_DEFINITIONS))
        for collection_name, definitions in INDEX_DEFINITIONS.items():
            collection = self.get_collection(collection_name)
            for keys, options in definitions:
                await self._create_index_if_not_exists(collection, keys, options)
        perf_logger.info("Database index creation completed in %.3fs", time.time() - start_time)

    async def _create_index_if_not_exists(
        self, collection: AsyncIOMotorCollection, field_spec: Any, options: Dict[str, Any]
    ):
        """Index creation failures are logged, never fatal to startup."""
        try:
            await collection.create_index(field_spec, **options)
            db_logger.debug("Created/ensured index %s on %s", field_spec, collection.name)
        except PyMongoError as e:
            db_logger.warning("Could not create/ensure index '%s' on %s: %s", field_spec, collection.name, e)

    # Operation timing logs used by the managers
    def log_query_start(self, collection_name: str, operation: str, query: Optional[Dict] = None) -> float:
        """Log the start of an operation and return its start time."""
        db_logger.debug(
            "Starting %s operation on collection '%s' - Query: %s",
            operation,
            collection_name,
            self._sanitize_query_for_logging(query) if query else {},
        )
        return time.time()

    def log_query_success(
        self,
        collection_name: str,
        operation: str,
        start_time: float,
        result_count: Optional[int] = None,
        result_info: Optional[str] = None,
    ):
        """Log an operation's duration and result count."""
        duration = time.time() - start_time
        if result_count is not None:
            perf_logger.info(
                "%s on '%s' completed successfully in %.3fs - %d records",
                operation,
                collection_name,
                duration,
                result_count,
            )
        else:
            perf_logger.info("%s on '%s' completed successfully in %.3fs", operation, collection_name, duration)
        if result_info:
            db_logger.debug("Additional result info for %s on '%s': %s", operation, collection_name, result_info)

    def log_query_error(
        self, collection_name: str, operation: str, start_time: float, error: Exception, query: Optional[Dict] = None
    ):
        """Log a failed operation with its sanitized query."""
        duration = time.time() - start_time
        db_logger.error(
            "%s operation failed on collection '%s' after %.3fs - Error: %s, Query: %s",
            operation,
            collection_name,
            duration,
            error,
            self._sanitize_query_for_logging(query) if query else {},
        )

    def _sanitize_query_for_logging(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Mask credential-bearing keys before they reach the logs."""
        sanitized = {}
        for key, value in query.items():
            if any(s in key.lower() for s in SENSITIVE_QUERY_KEYS):
                sanitized[key] = "***"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_query_for_logging(value)
            else:
                sanitized[key] = value
        return sanitized


db_manager = DatabaseManager()
