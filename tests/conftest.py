from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from stina.config import Settings
from stina.dependencies import ServiceContainer
from stina.infrastructure.audit import AuditLogger
from stina.infrastructure.background import BackgroundTaskTracker
from stina.main import create_app
from stina.models.domain.extraction_domain import ExtractionRecord
from stina.models.domain.meeting_request_domain import (
    Communication,
    Creator,
    CreatorSource,
    MeetingRequest,
    MeetingRequestStatus,
    Participant,
)
from stina.models.domain.preferences_domain import ContactRecord, UserPreferences, WorkingHours
from stina.repositories.contact_repository import InMemoryContactDirectory
from stina.repositories.meeting_request_repository import InMemoryMeetingRequestRepository
from stina.repositories.preferences_repository import InMemoryPreferencesRepository
from stina.services.extraction.extraction_service import ExtractionService
from stina.services.ingestion.ingestion_service import IngestionService
from stina.services.lifecycle.state_machine import LifecycleStateMachine
from stina.services.orchestration.orchestrator import SchedulingOrchestrator
from stina.services.orchestration.processing_guard import InMemoryProcessingGuard
from stina.services.scheduling_engine import SchedulingEngine
from stina.services.tools.handlers import build_tool_registry
from tests.fakes import (
    GUEST_EMAIL,
    USER_EMAIL,
    FakeCalendar,
    FakeLanguageModel,
    FakeMessaging,
    FakePlaces,
    make_communication,
    sample_intent,
)


@pytest.fixture
def preferences():
    return UserPreferences(
        working_hours=WorkingHours(start="09:00", end="17:00"),
        timezone="UTC",
        meeting_buffer_minutes=15,
        preferred_locations=["Soho"],
    )


@pytest.fixture
def repository():
    return InMemoryMeetingRequestRepository()


@pytest.fixture
def state_machine(repository):
    return LifecycleStateMachine(repository)


@pytest.fixture
def preferences_repository(preferences):
    return InMemoryPreferencesRepository({USER_EMAIL: preferences})


@pytest.fixture
def contacts():
    return InMemoryContactDirectory(
        [
            ContactRecord(email=GUEST_EMAIL, name="Sam Lee", company="Partner IO", timezone="UTC"),
            ContactRecord(email="alex.morgan@example.com", name="Alex Morgan"),
        ]
    )


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def places():
    return FakePlaces()


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def language_model():
    return FakeLanguageModel()


@pytest.fixture
def registry(calendar, places, messaging, contacts, state_machine):
    return build_tool_registry(
        calendar=calendar,
        places=places,
        messaging=messaging,
        contacts=contacts,
        state_machine=state_machine,
        audit_logger=AuditLogger(),
        read_timeout=1.0,
    )


@pytest.fixture
def orchestrator(state_machine, registry, language_model, calendar, preferences_repository):
    return SchedulingOrchestrator(
        state_machine=state_machine,
        registry=registry,
        language_model=language_model,
        calendar=calendar,
        preferences=preferences_repository,
        user_email=USER_EMAIL,
        max_rounds=4,
        llm_timeout=1.0,
        commit_max_retries=3,
        commit_backoff_seconds=0,
    )


@pytest.fixture
def extraction_service(state_machine, language_model):
    return ExtractionService(state_machine, language_model, user_email=USER_EMAIL)


@pytest.fixture
def ingestion_service(state_machine):
    return IngestionService(state_machine)


@pytest.fixture
def guard():
    return InMemoryProcessingGuard()


@pytest.fixture
def engine(state_machine, ingestion_service, extraction_service, orchestrator, guard, calendar):
    return SchedulingEngine(
        state_machine=state_machine,
        ingestion=ingestion_service,
        extraction=extraction_service,
        orchestrator=orchestrator,
        guard=guard,
        calendar=calendar,
    )


@pytest.fixture
def make_request(repository):
    """Store a request directly in any status."""

    async def _make(
        status: MeetingRequestStatus = MeetingRequestStatus.CONTEXT_COLLECTION,
        communications: list[Communication] | None = None,
        extracted: bool = True,
        **fields,
    ) -> MeetingRequest:
        now = datetime.now(UTC)
        request = MeetingRequest(
            id=fields.pop("id", "meeting_test"),
            status=status,
            participants=[Participant(email=GUEST_EMAIL, name="Sam Lee")],
            creator=Creator(email=USER_EMAIL, source=CreatorSource.EMAIL),
            communications=communications if communications is not None else [make_communication()],
            extraction_result=(
                ExtractionRecord(
                    status="succeeded",
                    communication_id="comm-1",
                    intent=sample_intent(),
                    attempted_at=now,
                )
                if extracted
                else None
            ),
            created_at=now,
            updated_at=now,
            **fields,
        )
        return await repository.create(request)

    return _make


@pytest.fixture
def app_settings():
    return Settings(
        STORE_BACKEND="memory",
        OPENAI_API_KEY="sk-test",
        GOOGLE_CALENDAR_ACCESS_TOKEN="ya29.test",
        MAILSLURP_API_KEY="mailslurp-test",
        MAILSLURP_INBOX_ID="inbox-1",
        STINA_USER_EMAIL=USER_EMAIL,
    )


@pytest.fixture
def container(app_settings, engine, messaging, guard):
    return ServiceContainer(
        settings=app_settings,
        engine=engine,
        messaging=messaging,
        guard=guard,
        tasks=BackgroundTaskTracker(),
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client
