"""
Extraction stage: turn the oldest unprocessed communication into a
MeetingIntent and store it on the request.

Extraction only reads communications. Marking them processed is left to the
orchestrator's terminal commit, so a failed or skipped planning run never
loses a message.
"""

from stina.errors import ExtractionError, MeetingRequestNotFoundError
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.extraction_domain import ExtractionRecord, MeetingIntent
from stina.models.domain.meeting_request_domain import (
    Communication,
    FailureRecord,
    MeetingMetadata,
    MeetingRequest,
    MeetingRequestStatus,
    MeetingRequestUpdate,
    Participant,
    utc_now,
)
from stina.models.domain.preferences_domain import ParticipantPreferences
from stina.services.extraction.prompts import build_system_prompt, build_user_prompt
from stina.services.lifecycle.state_machine import LifecycleStateMachine
from stina.services.llm.openai_client import (
    LanguageModel,
    LanguageModelError,
    MalformedResponseError,
)

logger = get_logger(__name__)

# One retry with the same input after a malformed answer
MALFORMED_ATTEMPTS = 2


class ExtractionService:
    def __init__(
        self,
        state_machine: LifecycleStateMachine,
        language_model: LanguageModel,
        user_email: str | None = None,
    ):
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.language_model = language_model
        self.user_email = user_email

    async def extract_intent(self, communication: Communication) -> MeetingIntent:
        """
        One schema-valid MeetingIntent, or ExtractionError.

        Provider failures were already retried inside the model client and
        surface immediately; a malformed answer is retried once.
        """
        system_prompt = build_system_prompt()
        user_prompt = build_user_prompt(communication, self.user_email)

        last_error: MalformedResponseError | None = None
        for attempt in range(1, MALFORMED_ATTEMPTS + 1):
            try:
                return await self.language_model.generate_structured(
                    system_prompt, user_prompt, MeetingIntent
                )
            except MalformedResponseError as e:
                last_error = e
                logger.warning(
                    "Malformed extraction response",
                    communication_id=communication.id,
                    attempt=attempt,
                    error=str(e),
                )
            except LanguageModelError as e:
                raise ExtractionError(
                    "Language model unavailable", details=str(e), recoverable=e.recoverable
                ) from e

        raise ExtractionError(
            f"No usable structure after {MALFORMED_ATTEMPTS} attempts",
            details=str(last_error),
        ) from last_error

    async def run(self, meeting_request_id: str) -> ExtractionRecord:
        """
        Extract intent for a request.

        Returns the stored record unchanged when a successful extraction
        already exists. On failure the record and `last_failure` are written
        and ExtractionError is re-raised; status and processed flags stay put.
        """
        request = await self.repository.get(meeting_request_id)
        if request is None:
            raise MeetingRequestNotFoundError(meeting_request_id)

        if request.has_successful_extraction():
            logger.info(
                "Extraction already succeeded, reusing stored intent",
                meeting_request_id=meeting_request_id,
            )
            return request.extraction_result

        pending = request.unprocessed_communications()
        if not pending:
            raise ExtractionError(
                "No unprocessed communication to extract from", recoverable=False
            )
        communication = pending[0]

        if request.status == MeetingRequestStatus.ANALYSING_EMAIL:
            request = await self.state_machine.apply_transition(
                meeting_request_id,
                MeetingRequestStatus.PROCESSING_WITH_STINA,
                trigger="extraction",
            )

        logger.info(
            "Extraction started",
            meeting_request_id=meeting_request_id,
            communication_id=communication.id,
            status=request.status.value,
        )

        try:
            intent = await self.extract_intent(communication)
        except ExtractionError as e:
            await self._record_failure(request, communication, e)
            raise

        record = ExtractionRecord(
            status="succeeded",
            communication_id=communication.id,
            intent=intent,
            attempted_at=utc_now(),
        )
        fields = self._success_fields(intent, record)

        if request.status == MeetingRequestStatus.PROCESSING_WITH_STINA:
            await self.state_machine.apply_transition(
                meeting_request_id,
                MeetingRequestStatus.CONTEXT_COLLECTION,
                fields=fields,
                trigger="extraction",
            )
        else:
            await self.state_machine.apply_fields(
                meeting_request_id, fields, expected_status=request.status
            )

        logger.info(
            "Extraction succeeded",
            meeting_request_id=meeting_request_id,
            communication_id=communication.id,
            invitee_count=len(intent.invitees),
        )
        return record

    def _success_fields(self, intent: MeetingIntent, record: ExtractionRecord) -> MeetingRequestUpdate:
        participants = [
            Participant(
                email=invitee.email,
                name=invitee.name,
                preferences=(
                    ParticipantPreferences(
                        relationship=invitee.relationship, work_context=invitee.work_context
                    )
                    if invitee.relationship or invitee.work_context
                    else None
                ),
            )
            for invitee in intent.invitees
            if not self._is_user(invitee.email)
        ]
        if not self._is_user(intent.initiator.email):
            participants.insert(
                0, Participant(email=intent.initiator.email, name=intent.initiator.name)
            )

        summary = intent.meeting_intent
        if intent.requested_timeframe:
            summary = f"{summary} (requested: {intent.requested_timeframe})"

        return MeetingRequestUpdate(
            extraction_result=record,
            participants=participants,
            context_summary=summary,
            metadata=MeetingMetadata(
                agenda=intent.meeting_intent,
                location=intent.location_hint,
                duration_minutes=intent.duration_minutes,
            ),
            clear_last_failure=True,
        )

    def _is_user(self, email: str) -> bool:
        return bool(self.user_email) and email.strip().lower() == self.user_email.strip().lower()

    async def _record_failure(
        self, request: MeetingRequest, communication: Communication, error: ExtractionError
    ) -> None:
        now = utc_now()
        record = ExtractionRecord(
            status="failed",
            communication_id=communication.id,
            error=error.reason,
            details=error.details,
            attempted_at=now,
        )
        await self.state_machine.apply_fields(
            request.id,
            MeetingRequestUpdate(
                extraction_result=record,
                last_failure=FailureRecord(
                    stage="extraction",
                    error_type=error.error_type,
                    reason=error.reason,
                    occurred_at=now,
                ),
            ),
            expected_status=request.status,
        )
        logger.error(
            "Extraction failed",
            meeting_request_id=request.id,
            communication_id=communication.id,
            error=error.reason,
            details=error.details,
        )
