# stina/dependencies.py
"""
Process-lifetime wiring.

build_container() creates every collaborator once (pool, guard, provider
clients, repositories, services) and hands them to the SchedulingEngine by
injection. The API lifespan and the worker each own one container.
"""

import asyncio
from dataclasses import dataclass, field

from fastapi import Request

from stina.config import Settings
from stina.db.pool import DatabasePoolManager
from stina.errors import RequestBusyError
from stina.infrastructure.audit import AuditLogger
from stina.infrastructure.background import BackgroundTaskTracker
from stina.infrastructure.observability.logging import get_logger
from stina.repositories.contact_repository import (
    ContactDirectory,
    InMemoryContactDirectory,
    PostgresContactDirectory,
)
from stina.repositories.meeting_request_repository import (
    InMemoryMeetingRequestRepository,
    MeetingRequestRepository,
    PostgresMeetingRequestRepository,
)
from stina.repositories.preferences_repository import (
    InMemoryPreferencesRepository,
    PostgresPreferencesRepository,
    PreferencesRepository,
)
from stina.services.calendar.google_client import GoogleCalendarClient, static_token
from stina.services.extraction.extraction_service import ExtractionService
from stina.services.ingestion.ingestion_service import IngestionService
from stina.services.lifecycle.state_machine import LifecycleStateMachine
from stina.services.llm.openai_client import OpenAILanguageModel
from stina.services.messaging.mailslurp_client import MailSlurpClient
from stina.services.orchestration.orchestrator import SchedulingOrchestrator
from stina.services.orchestration.processing_guard import (
    InMemoryProcessingGuard,
    ProcessingGuard,
    RedisProcessingGuard,
)
from stina.services.places.google_places_client import GooglePlacesClient
from stina.services.provider_http import ProviderHttpClient
from stina.services.scheduling_engine import SchedulingEngine
from stina.services.tools.handlers import build_tool_registry

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: SchedulingEngine
    messaging: MailSlurpClient
    guard: ProcessingGuard
    tasks: BackgroundTaskTracker
    db_pool: DatabasePoolManager | None = None
    http_clients: list[ProviderHttpClient] = field(default_factory=list)
    busy_retry_attempts: int = 3
    busy_retry_delay: float = 5.0

    def dispatch_processing(self, meeting_request_id: str):
        """
        Run extraction and orchestration for a request as a tracked task.

        If another run holds the request's claim, wait with exponential
        backoff and try again so the new communication is still planned.
        When every attempt finds the request busy, the busy error is left
        in `last_failure`.
        """

        async def process() -> None:
            attempts = max(1, self.busy_retry_attempts)
            for attempt in range(1, attempts + 1):
                try:
                    await self.engine.process_meeting_request(meeting_request_id)
                    return
                except RequestBusyError as e:
                    if attempt == attempts:
                        await self.engine.record_unexpected_failure(meeting_request_id, e)
                        raise
                    delay = self.busy_retry_delay * 2 ** (attempt - 1)
                    logger.info(
                        "Request busy, retrying processing",
                        meeting_request_id=meeting_request_id,
                        attempt=attempt,
                        delay=delay,
                    )
                    await asyncio.sleep(delay)
                except Exception as e:
                    await self.engine.record_unexpected_failure(meeting_request_id, e)
                    raise

        return self.tasks.spawn(f"process:{meeting_request_id}", process())

    async def health(self) -> dict:
        checks = {}
        if self.db_pool is not None:
            checks["database"] = await self.db_pool.health_check()
        if isinstance(self.guard, RedisProcessingGuard):
            checks["redis"] = {"healthy": await self.guard.ping()}
        checks["background_tasks"] = {"healthy": True, "active": self.tasks.active_count}
        return checks

    async def close(self, task_timeout: float = 10.0) -> None:
        """Shut down in reverse order of creation."""
        await self.tasks.wait_all(timeout=task_timeout)

        for client in self.http_clients:
            try:
                await client.close()
            except Exception as e:
                logger.error("Error closing provider client", provider=client.provider_name, error=str(e))

        if isinstance(self.guard, RedisProcessingGuard):
            try:
                await self.guard.close()
            except Exception as e:
                logger.error("Error closing Redis guard", error=str(e))

        if self.db_pool is not None:
            await self.db_pool.close()

        logger.info("Service container closed")


async def _build_stores(
    settings: Settings, db_pool: DatabasePoolManager | None
) -> tuple[MeetingRequestRepository, PreferencesRepository, ContactDirectory]:
    if db_pool is None:
        logger.warning("Using in-memory stores; data will not survive a restart")
        return (
            InMemoryMeetingRequestRepository(),
            InMemoryPreferencesRepository(default_timezone=settings.DEFAULT_TIMEZONE),
            InMemoryContactDirectory(),
        )

    if settings.STINA_USER_EMAIL:
        contacts = PostgresContactDirectory(db_pool, owner_email=settings.STINA_USER_EMAIL)
    else:
        logger.warning("STINA_USER_EMAIL not set, contact lookups will find nothing")
        contacts = InMemoryContactDirectory()

    preferences = PostgresPreferencesRepository(
        db_pool, default_timezone=settings.DEFAULT_TIMEZONE
    )
    return PostgresMeetingRequestRepository(db_pool), preferences, contacts


def _build_guard(settings: Settings) -> ProcessingGuard:
    if settings.uses_redis_guard():
        if not settings.REDIS_URL:
            raise RuntimeError("PROCESSING_GUARD_BACKEND=redis requires REDIS_URL")
        return RedisProcessingGuard.from_url(
            settings.REDIS_URL, ttl_seconds=settings.PROCESSING_GUARD_TTL_SECONDS
        )
    return InMemoryProcessingGuard()


async def build_container(settings: Settings) -> ServiceContainer:
    db_pool = None
    if settings.uses_postgres_store():
        db_pool = DatabasePoolManager(settings.DATABASE_URL)
        await db_pool.initialize()

    try:
        repository, preferences, contacts = await _build_stores(settings, db_pool)
        guard = _build_guard(settings)

        calendar = GoogleCalendarClient(
            static_token(settings.GOOGLE_CALENDAR_ACCESS_TOKEN),
            calendar_id=settings.GOOGLE_CALENDAR_ID,
        )
        places = GooglePlacesClient(settings.GOOGLE_PLACES_API_KEY)
        messaging = MailSlurpClient(
            settings.MAILSLURP_API_KEY,
            settings.MAILSLURP_INBOX_ID,
            settings.MAILSLURP_API_BASE_URL,
        )
        language_model = OpenAILanguageModel(
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            max_tokens=settings.OPENAI_MAX_TOKENS,
            temperature=settings.OPENAI_TEMPERATURE,
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_retries=settings.LLM_MAX_RETRIES,
        )

        state_machine = LifecycleStateMachine(repository)
        registry = build_tool_registry(
            calendar=calendar,
            places=places,
            messaging=messaging,
            contacts=contacts,
            state_machine=state_machine,
            audit_logger=AuditLogger(db_pool),
            read_timeout=settings.TOOL_TIMEOUT_SECONDS,
        )
        orchestrator = SchedulingOrchestrator(
            state_machine=state_machine,
            registry=registry,
            language_model=language_model,
            calendar=calendar,
            preferences=preferences,
            user_email=settings.STINA_USER_EMAIL,
            max_rounds=settings.ORCHESTRATOR_MAX_ROUNDS,
            llm_timeout=settings.LLM_TIMEOUT_SECONDS,
            commit_max_retries=settings.COMMIT_MAX_RETRIES,
            commit_backoff_seconds=settings.COMMIT_BACKOFF_SECONDS,
        )
        engine = SchedulingEngine(
            state_machine=state_machine,
            ingestion=IngestionService(state_machine),
            extraction=ExtractionService(state_machine, language_model, settings.STINA_USER_EMAIL),
            orchestrator=orchestrator,
            guard=guard,
            calendar=calendar,
        )
    except Exception:
        if db_pool is not None:
            await db_pool.close()
        raise

    logger.info(
        "Service container built",
        store="postgres" if db_pool else "memory",
        guard=type(guard).__name__,
        max_rounds=settings.ORCHESTRATOR_MAX_ROUNDS,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        messaging=messaging,
        guard=guard,
        tasks=BackgroundTaskTracker(),
        db_pool=db_pool,
        http_clients=[calendar, places, messaging],
        busy_retry_attempts=settings.PROCESSING_BUSY_RETRY_ATTEMPTS,
        busy_retry_delay=settings.PROCESSING_BUSY_RETRY_DELAY_SECONDS,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_engine(request: Request) -> SchedulingEngine:
    return request.app.state.container.engine
