"""
Persistent email job queue.

Jobs are written by request handlers and the reminder sweep, then drained in batches by
``process_pending`` (the ``/cron/process-emails`` route or the Celery beat task). A job is
claimed with a single conditional update, so two concurrent sweeps never send the same job.
A claim older than ``EMAIL_CLAIM_TIMEOUT_SECONDS`` belongs to a worker that died mid-send;
the next sweep puts it back in the queue, or fails it once its attempts are spent.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional
import uuid

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.email import email_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import utc_now
from family_finance.utils.error_handling import Conflict, ValidationError

logger = get_logger(prefix="[EmailJobManager]")

JOB_WELCOME_EMAIL = "WELCOME_EMAIL"
JOB_FAMILY_INVITATION = "FAMILY_INVITATION"
JOB_REMINDER_EMAIL = "REMINDER_EMAIL"
JOB_TYPES = (JOB_WELCOME_EMAIL, JOB_FAMILY_INVITATION, JOB_REMINDER_EMAIL)

STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
JOB_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)


@dataclass
class ProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class EmailSendFailed(Exception):
    """Raised internally when every provider declined a message."""


class EmailJobManager:
    """Enqueues email jobs and drains them with per-job isolation."""

    def __init__(self, db_manager=None, email_manager=None, max_attempts: Optional[int] = None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.email_manager = email_manager or globals()["email_manager"]
        self.max_attempts = max_attempts or settings.EMAIL_MAX_ATTEMPTS
        self.claim_timeout = timedelta(seconds=settings.EMAIL_CLAIM_TIMEOUT_SECONDS)
        self.logger = logger

    async def enqueue(self, job_type: str, data: Dict[str, Any], dedupe_key: Optional[str] = None) -> str:
        """
        Persist a new PENDING job.

        Raises:
            ValidationError: If ``job_type`` is unknown.
            Conflict: If a job with the same ``dedupe_key`` already exists.
        """
        if job_type not in JOB_TYPES:
            raise ValidationError("Unknown email job type", field="type", value=job_type)

        job_id = f"job_{uuid.uuid4().hex[:16]}"
        job = {
            "job_id": job_id,
            "type": job_type,
            "status": STATUS_PENDING,
            "data": data,
            "attempts": 0,
            "max_attempts": self.max_attempts,
            "error": None,
            "created_at": utc_now(),
            "processed_at": None,
        }
        if dedupe_key:
            job["dedupe_key"] = dedupe_key

        try:
            await self.db_manager.get_collection("email_jobs").insert_one(job)
        except DuplicateKeyError as e:
            raise Conflict("Email job already queued", "EMAIL_JOB_DUPLICATE", {"dedupe_key": dedupe_key}) from e

        self.logger.info("Queued %s job %s", job_type, job_id)
        return job_id

    async def _claim(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.db_manager.get_collection("email_jobs").find_one_and_update(
            {"job_id": job_id, "status": STATUS_PENDING},
            {"$set": {"status": STATUS_PROCESSING, "claimed_at": utc_now()}, "$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )

    async def _reclaim_stale(self) -> int:
        """Return abandoned PROCESSING jobs to PENDING, or FAILED when no attempts remain."""
        jobs_collection = self.db_manager.get_collection("email_jobs")
        stale = {
            "status": STATUS_PROCESSING,
            "$or": [{"claimed_at": None}, {"claimed_at": {"$lte": utc_now() - self.claim_timeout}}],
        }
        exhausted = await jobs_collection.update_many(
            {**stale, "$expr": {"$gte": ["$attempts", "$max_attempts"]}},
            {"$set": {"status": STATUS_FAILED, "error": "Claim expired before the send finished"}},
        )
        requeued = await jobs_collection.update_many(
            {**stale, "$expr": {"$lt": ["$attempts", "$max_attempts"]}},
            {"$set": {"status": STATUS_PENDING, "claimed_at": None}},
        )
        if exhausted.modified_count or requeued.modified_count:
            self.logger.warning(
                "Reclaimed stale email jobs: %d requeued, %d failed",
                requeued.modified_count,
                exhausted.modified_count,
            )
        return requeued.modified_count

    async def _dispatch(self, job: Dict[str, Any]) -> bool:
        data = job.get("data") or {}
        job_type = job.get("type")
        if job_type == JOB_REMINDER_EMAIL:
            return await self.email_manager.send_reminder_email(
                data["to"], data.get("name"), data["reminder"], data.get("family_name", "")
            )
        if job_type == JOB_FAMILY_INVITATION:
            return await self.email_manager.send_family_invitation_email(
                data["to"],
                data.get("inviter_name", ""),
                data.get("family_name", ""),
                data["invite_url"],
                data.get("role", "MEMBER"),
                data.get("expires_at"),
            )
        if job_type == JOB_WELCOME_EMAIL:
            sent = await self.email_manager.send_welcome_email(data["to"], data.get("name"))
            if sent and data.get("user_id"):
                await self.db_manager.get_collection("users").update_one(
                    {"user_id": data["user_id"]}, {"$set": {"welcome_email_sent": True}}
                )
            return sent
        raise ValueError(f"Unknown email job type: {job_type}")

    async def process_pending(self, batch_size: Optional[int] = None) -> ProcessResult:
        """
        Send up to ``batch_size`` pending jobs, oldest first.

        A failed job goes back to PENDING until its last allowed attempt, then to FAILED.
        One job's failure never aborts the batch. Stale claims are released first.
        """
        batch_size = batch_size or settings.EMAIL_BATCH_SIZE
        jobs_collection = self.db_manager.get_collection("email_jobs")
        result = ProcessResult()

        await self._reclaim_stale()

        start_time = self.db_manager.log_query_start("email_jobs", "process_pending", {"status": STATUS_PENDING})
        cursor = jobs_collection.find(
            {"status": STATUS_PENDING, "$expr": {"$lt": ["$attempts", "$max_attempts"]}}
        ).sort("created_at", ASCENDING).limit(batch_size)
        candidates = await cursor.to_list(length=batch_size)

        for candidate in candidates:
            job = await self._claim(candidate["job_id"])
            if job is None:
                self.logger.debug("Job %s was claimed by another worker", candidate["job_id"])
                continue

            result.processed += 1
            try:
                if not await self._dispatch(job):
                    raise EmailSendFailed("All email providers failed")
            except Exception as e:
                result.failed += 1
                final = job["attempts"] >= job.get("max_attempts", self.max_attempts)
                await jobs_collection.update_one(
                    {"job_id": job["job_id"]},
                    {"$set": {"status": STATUS_FAILED if final else STATUS_PENDING, "error": str(e)}},
                )
                result.errors.append({"job_id": job["job_id"], "error": str(e)})
                self.logger.warning(
                    "Email job %s failed (attempt %d, %s): %s",
                    job["job_id"],
                    job["attempts"],
                    "giving up" if final else "will retry",
                    e,
                )
                continue

            await jobs_collection.update_one(
                {"job_id": job["job_id"]},
                {"$set": {"status": STATUS_COMPLETED, "processed_at": utc_now(), "error": None}},
            )
            result.succeeded += 1

        self.db_manager.log_query_success(
            "email_jobs",
            "process_pending",
            start_time,
            result.processed,
            f"succeeded={result.succeeded} failed={result.failed}",
        )
        return result

    async def get_queue_stats(self) -> Dict[str, int]:
        """Job counts by status."""
        pipeline = [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        stats = {status_name: 0 for status_name in JOB_STATUSES}
        rows = await self.db_manager.get_collection("email_jobs").aggregate(pipeline).to_list(length=None)
        for row in rows:
            stats[row["_id"]] = row["count"]
        return stats


email_job_manager = EmailJobManager()
