"""
Webhook Ingestion Pipeline
Turns request-manager push notifications into local requests.

The fast path writes the request synchronously. When that fails the job is
persisted to the ``webhook_jobs`` table and a separate worker process retries
it with exponential backoff. Both paths perform the same idempotent upsert
keyed on the upstream request id.
"""

import asyncio
import hmac
import json
import logging
from datetime import datetime
from typing import Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .config import WEBHOOK_SECRET, ConfigStore
from .exceptions import InvalidPayloadError, WebhookAuthError
from .logging_config import LogContext
from .models import MediaKind, Request, WebhookJob, WebhookPayload
from .persistence import PersistedJob, PersistenceManager, new_id
from .retry import RetryConfig, RetryHandler
from .status import INITIAL_STATUS

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = frozenset({"MEDIA_APPROVED", "MEDIA_AUTO_APPROVED"})


def extract_secret(headers: Mapping[str, str], query: Mapping[str, str]) -> Optional[str]:
    """Presented secret: header, then bearer token, then query parameter."""
    header = headers.get("x-webhook-secret")
    if header:
        return header
    auth = headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token
    return query.get("secret") or None


async def ingest_job(
    job: WebhookJob,
    persistence: PersistenceManager,
    metadata=None,
) -> Tuple[Request, bool]:
    """
    Resolve metadata and upsert the request for one webhook job.

    Returns (stored request, created). Raises on store or metadata failure.
    """
    meta = None
    if metadata is not None and metadata.configured:
        meta = await metadata.get_metadata(job.catalog_id, job.media_kind)

    now = datetime.now().timestamp()
    request = Request(
        id=new_id(),
        upstream_id=job.upstream_id,
        catalog_id=job.catalog_id,
        media_kind=job.media_kind,
        title=meta.title if meta else job.title,
        year=meta.year if meta else None,
        poster_url=meta.poster_url if meta else None,
        overview=meta.overview if meta else None,
        status=INITIAL_STATUS,
        requested_by=job.requested_by,
        requested_at=now,
        created_at=now,
        updated_at=now,
    )

    stored, created = await persistence.upsert_request_from_webhook(request)
    if created:
        await persistence.log_activity(
            "imported", request_id=stored.id, upstream_id=stored.upstream_id,
            title=stored.title, details=f"webhook, requested by {stored.requested_by}",
        )
    return stored, created


class JobQueue:
    """At-least-once queue of webhook jobs backed by the store."""

    def __init__(self, persistence: PersistenceManager, max_attempts: int = 3):
        self.persistence = persistence
        self.max_attempts = max_attempts

    async def enqueue(self, job: WebhookJob) -> str:
        job_id = await self.persistence.enqueue_job(job.to_dict(), self.max_attempts)
        with LogContext(job_id=job_id, upstream_id=job.upstream_id):
            logger.info(f"Queued webhook job for upstream request {job.upstream_id}")
        return job_id

    async def due(self, now: float = None, limit: int = 50) -> list[PersistedJob]:
        return await self.persistence.get_due_jobs(now, limit)

    async def jobs(self) -> list[PersistedJob]:
        return await self.persistence.get_jobs()

    async def clear(self) -> int:
        return await self.persistence.clear_jobs()


class WebhookPipeline:
    """Authenticate, filter and ingest webhook notifications."""

    def __init__(
        self,
        persistence: PersistenceManager,
        config: ConfigStore,
        queue: JobQueue,
        metadata=None,
    ):
        self.persistence = persistence
        self.config = config
        self.queue = queue
        self.metadata = metadata

    async def authenticate(
        self, headers: Mapping[str, str], query: Mapping[str, str]
    ) -> None:
        """Raise ``WebhookAuthError`` if a secret is configured and not presented."""
        expected = await self.config.get(WEBHOOK_SECRET)
        if not expected:
            return
        presented = extract_secret(headers, query)
        if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
            logger.warning("Webhook rejected: secret mismatch")
            raise WebhookAuthError("Unauthorized")

    @staticmethod
    def parse(body: bytes) -> dict:
        """Decode the raw body; only undecodable JSON is an error."""
        try:
            return json.loads(body or b"")
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidPayloadError("Invalid JSON", str(e)) from e

    @staticmethod
    def to_job(payload: WebhookPayload) -> Optional[WebhookJob]:
        if payload.request is None or payload.request.id is None:
            return None
        if payload.media is None or payload.media.catalog_id is None:
            return None
        return WebhookJob(
            upstream_id=payload.request.id,
            catalog_id=payload.media.catalog_id,
            media_kind=MediaKind.parse(payload.media.media_type or "movie"),
            title=payload.subject or "Unknown",
            requested_by=payload.request.requested_by_username or "unknown",
        )

    async def handle(self, data) -> dict:
        """
        Process a decoded notification. Never raises.

        Failures of the fast path are handed to the queue; failures of the
        queue are only logged.
        """
        try:
            if not isinstance(data, dict):
                raise InvalidPayloadError("Webhook body is not an object")
            payload = WebhookPayload.model_validate(data)
        except (InvalidPayloadError, PydanticValidationError) as e:
            logger.error(f"Ignoring malformed webhook payload: {e}")
            return {"ok": True, "skipped": True}

        if payload.notification_type not in ALLOWED_EVENTS:
            logger.debug(f"Ignoring webhook event {payload.notification_type!r}")
            return {"ok": True, "skipped": True}

        try:
            job = self.to_job(payload)
        except ValueError as e:
            logger.error(f"Ignoring webhook with unknown media type: {e}")
            return {"ok": True, "skipped": True}
        if job is None:
            logger.error(
                f"Webhook {payload.notification_type} missing request or catalog id"
            )
            return {"ok": True, "skipped": True}

        with LogContext(upstream_id=job.upstream_id, media_kind=job.media_kind.value):
            try:
                request, created = await ingest_job(job, self.persistence, self.metadata)
                logger.info(
                    f"Webhook {'created' if created else 'refreshed'} request "
                    f"{request.id} ({request.status.value})"
                )
                return {"ok": True, "created": created, "requestId": request.id}
            except Exception as e:
                logger.error(f"Webhook fast path failed, queueing: {e}")

            try:
                job_id = await self.queue.enqueue(job)
                return {"ok": True, "queued": True, "jobId": job_id}
            except Exception as e:
                logger.error(f"Failed to enqueue webhook job: {e}")
                return {"ok": True, "queued": False}


class WebhookWorker:
    """
    Consumer for queued webhook jobs.

    Runs as its own process (``pickrr worker``). A job that keeps failing is
    rescheduled with exponential backoff and dropped after its last attempt.
    """

    def __init__(
        self,
        queue: JobQueue,
        metadata=None,
        retry_config: RetryConfig = None,
    ):
        self.queue = queue
        self.persistence = queue.persistence
        self.metadata = metadata
        self.retry = RetryHandler(retry_config or RetryConfig(max_attempts=queue.max_attempts))
        self.processed = 0

    async def process(self, job: PersistedJob) -> str:
        """Run one job; returns "done", "retry" or "dropped"."""
        attempt = job.attempts + 1
        with LogContext(job_id=job.id, operation="webhook_job"):
            try:
                work = WebhookJob.from_dict(job.payload)
                request, created = await ingest_job(work, self.persistence, self.metadata)
            except Exception as e:
                delay = self.retry.next_delay(e, attempt, job.max_attempts)
                if delay is None:
                    logger.error(
                        f"Dropping webhook job after {attempt} attempt(s): {e}"
                    )
                    await self.persistence.delete_job(job.id)
                    return "dropped"
                logger.warning(
                    f"Webhook job attempt {attempt} failed, retrying in {delay:.0f}s: {e}"
                )
                await self.persistence.reschedule_job(
                    job.id, attempt, datetime.now().timestamp() + delay, str(e)
                )
                return "retry"

            await self.persistence.delete_job(job.id)
            self.processed += 1
            logger.info(
                f"Webhook job completed: {request.title} "
                f"(upstream {request.upstream_id}, created={created})"
            )
            return "done"

    async def run_once(self, now: float = None) -> dict:
        """Process every job that is due. Returns outcome counts."""
        counts = {"done": 0, "retry": 0, "dropped": 0}
        for job in await self.queue.due(now):
            counts[await self.process(job)] += 1
        return counts

    async def run_forever(self, poll_interval: float = 2.0) -> None:
        """Poll the queue until cancelled."""
        logger.info(f"Webhook worker started (poll every {poll_interval}s)")
        while True:
            try:
                counts = await self.run_once()
                if any(counts.values()):
                    logger.info(f"Webhook worker pass: {counts}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Webhook worker pass failed: {e}")
            await asyncio.sleep(poll_interval)
