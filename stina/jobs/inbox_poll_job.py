"""
Inbox Poll Job.
Pulls unread messages from the assistant's inbox, ingests them (threading
replies onto their open meeting requests) and dispatches processing for
every request that received something new.
"""

import asyncio
from datetime import UTC, datetime

from stina.config import settings
from stina.dependencies import ServiceContainer, build_container
from stina.errors import ProviderError, SchedulingError
from stina.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 60
SHUTDOWN_TASK_TIMEOUT_SECONDS = 120


class InboxPollJobError(Exception):
    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class InboxPollMetrics:
    """Counters for one poll."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.messages_seen = 0
        self.requests_created = 0
        self.messages_threaded = 0
        self.duplicates = 0
        self.failures = 0
        self.dispatched = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_ingested(self, created: bool):
        if created:
            self.requests_created += 1
        else:
            self.messages_threaded += 1

    def record_failure(self, message_id: str, error: str):
        self.failures += 1
        self.errors.append({"message_id": message_id, "error": error})
        logger.warning("Inbound message rejected", message_id=message_id, error=error)

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "inbox_poll",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "messages_seen": self.messages_seen,
            "requests_created": self.requests_created,
            "messages_threaded": self.messages_threaded,
            "duplicates": self.duplicates,
            "failures": self.failures,
            "dispatched": self.dispatched,
            "errors_count": len(self.errors),
        }


class InboxPollJob:
    def __init__(self, container: ServiceContainer, user_email: str | None = None):
        self.container = container
        self.user_email = user_email
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = InboxPollMetrics()

    async def run_once(self) -> dict:
        """
        One poll of the inbox.

        Raises:
            InboxPollJobError: the inbox could not be listed
        """
        if self.is_running:
            logger.warning("Inbox poll already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            try:
                messages = await self.container.messaging.list_unprocessed()
            except ProviderError as e:
                raise InboxPollJobError(
                    f"Could not list inbox: {e}", operation="list_unprocessed"
                ) from e

            self.job_metrics.messages_seen = len(messages)
            touched: list[str] = []

            for message in messages:
                try:
                    result = await self.container.engine.ingest_inbound_message(
                        message, self.user_email
                    )
                except SchedulingError as e:
                    self.job_metrics.record_failure(message.id, e.reason)
                    continue

                if result.duplicate:
                    self.job_metrics.duplicates += 1
                    continue

                self.job_metrics.record_ingested(result.created)
                if result.meeting_request.id not in touched:
                    touched.append(result.meeting_request.id)

            for meeting_request_id in touched:
                self.container.dispatch_processing(meeting_request_id)
                self.job_metrics.dispatched += 1

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            metrics = self.job_metrics.to_dict()
            logger.info("Inbox poll completed", **metrics)
            return metrics

        finally:
            self.is_running = False


async def start_inbox_poll_scheduler():
    """Poll the inbox forever at INBOX_POLL_INTERVAL_SECONDS."""
    container = await build_container(settings)
    job = InboxPollJob(container, user_email=settings.STINA_USER_EMAIL)
    logger.info("Starting inbox poll scheduler", interval_seconds=settings.INBOX_POLL_INTERVAL_SECONDS)

    try:
        while True:
            try:
                await job.run_once()
                await asyncio.sleep(settings.INBOX_POLL_INTERVAL_SECONDS)
            except InboxPollJobError as e:
                logger.error("Inbox poll failed", error=str(e), operation=e.operation)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    finally:
        await container.close(task_timeout=SHUTDOWN_TASK_TIMEOUT_SECONDS)


async def run_inbox_poll_once():
    """Single poll, waiting for the dispatched processing to finish."""
    container = await build_container(settings)
    try:
        await InboxPollJob(container, user_email=settings.STINA_USER_EMAIL).run_once()
    finally:
        await container.close(task_timeout=SHUTDOWN_TASK_TIMEOUT_SECONDS)
