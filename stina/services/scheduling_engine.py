# stina/services/scheduling_engine.py
"""
SchedulingEngine: the surface the API and the worker call.

Wires ingestion, extraction and orchestration together over one repository
and one state machine, and owns the per-request processing claim so that at
most one extraction or orchestration runs per request.
"""

from dataclasses import dataclass

from stina.errors import (
    MeetingRequestNotFoundError,
    ProviderError,
    RequestBusyError,
    SchedulingError,
)
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.extraction_domain import ExtractionRecord
from stina.models.domain.meeting_request_domain import (
    PRE_STAGE_STATUSES,
    Communication,
    FailureRecord,
    MeetingRequest,
    MeetingRequestCreate,
    MeetingRequestFilters,
    MeetingRequestStatus,
    MeetingRequestUpdate,
    ProgressInfo,
    utc_now,
)
from stina.models.domain.messaging_domain import InboundMessage
from stina.services.calendar.google_client import CalendarProvider
from stina.services.extraction.extraction_service import ExtractionService
from stina.services.ingestion.ingestion_service import IngestionResult, IngestionService
from stina.services.lifecycle.state_machine import LifecycleStateMachine
from stina.services.orchestration.orchestrator import (
    ORCHESTRATABLE_STATUSES,
    OrchestrationOutcome,
    SchedulingOrchestrator,
)
from stina.services.orchestration.processing_guard import ProcessingGuard, claimed

logger = get_logger(__name__)

# Leaving a booking through these statuses frees its calendar slot
EVENT_RELEASING_STATUSES = frozenset(
    {MeetingRequestStatus.RESCHEDULED, MeetingRequestStatus.CANCELLED}
)


@dataclass
class ProcessingReport:
    """What process_meeting_request did for one request."""

    meeting_request_id: str
    extraction: ExtractionRecord | None = None
    orchestration: OrchestrationOutcome | None = None
    skipped_reason: str | None = None


class SchedulingEngine:
    def __init__(
        self,
        state_machine: LifecycleStateMachine,
        ingestion: IngestionService,
        extraction: ExtractionService,
        orchestrator: SchedulingOrchestrator,
        guard: ProcessingGuard,
        calendar: CalendarProvider | None = None,
    ):
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.ingestion = ingestion
        self.extraction = extraction
        self.orchestrator = orchestrator
        self.guard = guard
        self.calendar = calendar

    async def create_meeting_request(self, payload: MeetingRequestCreate) -> MeetingRequest:
        return await self.ingestion.create_meeting_request(payload)

    async def ingest_communication(
        self, meeting_request_id: str, communication: Communication
    ) -> MeetingRequest:
        return await self.ingestion.ingest_communication(meeting_request_id, communication)

    async def ingest_inbound_message(
        self, message: InboundMessage, user_email: str | None = None
    ) -> IngestionResult:
        return await self.ingestion.ingest_inbound_message(message, user_email)

    async def run_extraction(self, meeting_request_id: str) -> ExtractionRecord:
        async with claimed(self.guard, meeting_request_id):
            return await self.extraction.run(meeting_request_id)

    async def run_orchestration(self, meeting_request_id: str) -> OrchestrationOutcome:
        async with claimed(self.guard, meeting_request_id):
            return await self.orchestrator.run(meeting_request_id)

    async def process_meeting_request(self, meeting_request_id: str) -> ProcessingReport:
        """
        Run whichever stages a request is ready for, under a single claim.

        Extraction runs while the request is in the pre-stage or has never
        been extracted; orchestration runs when the request is plannable and
        has unprocessed communications.
        """
        report = ProcessingReport(meeting_request_id=meeting_request_id)

        async with claimed(self.guard, meeting_request_id):
            request = await self.get_meeting_request(meeting_request_id)

            if request.status in PRE_STAGE_STATUSES or (
                not request.has_successful_extraction() and request.unprocessed_communications()
            ):
                report.extraction = await self.extraction.run(meeting_request_id)
                request = await self.get_meeting_request(meeting_request_id)

            if request.status not in ORCHESTRATABLE_STATUSES:
                report.skipped_reason = f"status {request.status.value} is not plannable"
            elif not request.unprocessed_communications():
                report.skipped_reason = "no unprocessed communications"
            else:
                report.orchestration = await self.orchestrator.run(meeting_request_id)

        if report.skipped_reason:
            logger.info(
                "Orchestration skipped",
                meeting_request_id=meeting_request_id,
                reason=report.skipped_reason,
            )
        return report

    async def apply_transition(
        self,
        meeting_request_id: str,
        status: MeetingRequestStatus,
        fields: MeetingRequestUpdate | None = None,
    ) -> MeetingRequest:
        """
        Apply a status change. Leaving a booking (reschedule or cancel) also
        removes its calendar event once the transition is committed.
        """
        return await self._transition(meeting_request_id, status, fields, trigger="api")

    async def _transition(
        self,
        meeting_request_id: str,
        status: MeetingRequestStatus,
        fields: MeetingRequestUpdate | None,
        trigger: str,
    ) -> MeetingRequest:
        event = None
        if status in EVENT_RELEASING_STATUSES:
            event = (await self.get_meeting_request(meeting_request_id)).scheduled_event

        updated = await self.state_machine.apply_transition(
            meeting_request_id, status, fields=fields, trigger=trigger
        )

        if event is not None:
            await self._delete_event(meeting_request_id, event.external_event_id)
        return updated

    async def _delete_event(self, meeting_request_id: str, event_id: str) -> None:
        """Best effort: the transition stands even if the provider refuses."""
        if self.calendar is None:
            return
        try:
            await self.calendar.delete_event(event_id)
        except ProviderError as e:
            logger.error(
                "Request left its booking but the calendar event could not be deleted",
                meeting_request_id=meeting_request_id,
                event_id=event_id,
                error=str(e),
            )

    async def get_meeting_request(self, meeting_request_id: str) -> MeetingRequest:
        request = await self.repository.get(meeting_request_id)
        if request is None:
            raise MeetingRequestNotFoundError(meeting_request_id)
        return request

    async def list_meeting_requests(self, filters: MeetingRequestFilters) -> list[MeetingRequest]:
        return await self.repository.query(filters)

    async def cancel_meeting_request(
        self, meeting_request_id: str, reason: str | None = None
    ) -> MeetingRequest:
        """Cancel a request and remove its booked calendar event, if any."""
        fields = MeetingRequestUpdate()
        if reason:
            fields.progress = ProgressInfo(percent=100, note=reason[:500])
        return await self._transition(
            meeting_request_id, MeetingRequestStatus.CANCELLED, fields, trigger="cancel"
        )

    async def can_user_access(self, meeting_request_id: str, user_email: str) -> bool:
        """The creator and the participants may see a request."""
        request = await self.repository.get(meeting_request_id)
        return request is not None and request.involves(user_email)

    async def record_unexpected_failure(self, meeting_request_id: str, error: BaseException) -> None:
        """
        Write `last_failure` for an error no stage classified.

        Stage errors (SchedulingError) record their own failure before they
        propagate, so only foreign exceptions are written here. RequestBusyError
        is raised before any stage runs and is written too.
        """
        if isinstance(error, SchedulingError) and not isinstance(error, RequestBusyError):
            return
        try:
            await self.state_machine.apply_fields(
                meeting_request_id,
                MeetingRequestUpdate(
                    last_failure=FailureRecord(
                        stage="orchestration",
                        error_type=type(error).__name__,
                        reason=str(error) or type(error).__name__,
                        occurred_at=utc_now(),
                    )
                ),
            )
        except SchedulingError as e:
            logger.error(
                "Could not record unexpected failure",
                meeting_request_id=meeting_request_id,
                error=str(e),
            )
