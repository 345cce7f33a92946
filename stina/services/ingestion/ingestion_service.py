"""
Communication ingestion: normalises inbound messages into Communications
and appends them, unprocessed, to a new or existing meeting request.
"""

import uuid
from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError

from stina.errors import MeetingRequestNotFoundError, ValidationError
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.meeting_request_domain import (
    Communication,
    CommunicationType,
    Creator,
    CreatorSource,
    MeetingRequest,
    MeetingRequestCreate,
    MeetingRequestFilters,
    MeetingRequestUpdate,
    Participant,
    initial_status_for,
    merge_participants,
    utc_now,
)
from stina.models.domain.messaging_domain import InboundMessage
from stina.services.lifecycle.state_machine import LifecycleStateMachine

logger = get_logger(__name__)


def new_meeting_request_id() -> str:
    return f"meeting_{uuid.uuid4().hex}"


@dataclass
class IngestionResult:
    meeting_request: MeetingRequest
    created: bool
    duplicate: bool = False


def communication_from_message(message: InboundMessage) -> Communication:
    return Communication(
        id=message.id,
        type=CommunicationType(message.channel),
        content=message.body,
        sender=message.sender,
        timestamp=message.received_at,
        subject=message.subject,
        # A fresh conversation is threaded on its own first message
        thread_id=message.thread_id or message.id,
    )


class IngestionService:
    def __init__(self, state_machine: LifecycleStateMachine):
        self.state_machine = state_machine
        self.repository = state_machine.repository

    async def create_meeting_request(self, payload: MeetingRequestCreate) -> MeetingRequest:
        now = utc_now()
        request = MeetingRequest(
            id=new_meeting_request_id(),
            status=initial_status_for(payload.creator.source),
            participants=merge_participants([], payload.participants),
            creator=payload.creator,
            context={"summary": payload.context_summary},
            metadata=payload.metadata,
            communications=[c.model_copy(update={"processed": False}) for c in payload.communications],
            created_at=now,
            updated_at=now,
        )
        created = await self.repository.create(request)
        logger.info(
            "Meeting request created",
            meeting_request_id=created.id,
            status=created.status.value,
            source=created.creator.source.value,
            participant_count=len(created.participants),
        )
        return created

    async def ingest_communication(
        self, meeting_request_id: str, communication: Communication
    ) -> MeetingRequest:
        """
        Append one communication, unprocessed.

        Raises:
            MeetingRequestNotFoundError: unknown id
            ValidationError: duplicate communication id, or the request is closed
        """
        current = await self.repository.get(meeting_request_id)
        if current is None:
            raise MeetingRequestNotFoundError(meeting_request_id)
        if current.is_terminal():
            raise ValidationError(
                f"Meeting request is {current.status.value} and accepts no new communications",
                field="status",
            )
        if current.find_communication(communication.id) is not None:
            raise ValidationError(
                f"Communication {communication.id} was already ingested", field="communications.id"
            )

        updated = await self.state_machine.apply_fields(
            meeting_request_id,
            MeetingRequestUpdate(
                append_communications=[communication.model_copy(update={"processed": False})]
            ),
        )
        logger.info(
            "Communication ingested",
            meeting_request_id=meeting_request_id,
            communication_id=communication.id,
            type=communication.type.value,
            status=updated.status.value,
        )
        return updated

    async def ingest_inbound_message(
        self, message: InboundMessage, user_email: str | None = None
    ) -> IngestionResult:
        """
        Thread a message onto the open request it replies to, or open a new one.

        Re-ingesting a message already stored is reported as a duplicate
        rather than an error, so inbox polling can be replayed safely.
        """
        communication = communication_from_message(message)

        existing = await self._find_by_thread(communication.thread_id, message.id)
        if existing is not None and existing.find_communication(message.id) is not None:
            logger.info(
                "Inbound message already ingested",
                meeting_request_id=existing.id,
                message_id=message.id,
            )
            return IngestionResult(meeting_request=existing, created=False, duplicate=True)

        if existing is not None and not existing.is_terminal():
            updated = await self.ingest_communication(existing.id, communication)
            sender = self._sender_participant(message, user_email)
            if sender is not None and not updated.involves(sender.email):
                updated = await self.state_machine.apply_fields(
                    updated.id, MeetingRequestUpdate(participants=[sender])
                )
            return IngestionResult(meeting_request=updated, created=False)

        sender = self._sender_participant(message, user_email, required=True)
        try:
            creator = Creator(email=user_email or message.sender, source=CreatorSource(message.channel))
        except PydanticValidationError as e:
            raise ValidationError("Creator email is not a valid address", field="creator.email") from e

        created = await self.create_meeting_request(
            MeetingRequestCreate(
                creator=creator,
                participants=[sender],
                context_summary=message.subject or "",
                communications=[communication],
            )
        )
        return IngestionResult(meeting_request=created, created=True)

    async def _find_by_thread(self, thread_id: str | None, message_id: str) -> MeetingRequest | None:
        for candidate in (message_id, thread_id):
            if not candidate:
                continue
            matches = await self.repository.query(MeetingRequestFilters(thread_id=candidate, limit=5))
            if not matches:
                continue
            open_requests = [r for r in matches if not r.is_terminal()]
            # A message already stored wins; otherwise the most recent open request
            for request in matches:
                if request.find_communication(message_id) is not None:
                    return request
            return open_requests[0] if open_requests else matches[0]
        return None

    def _sender_participant(
        self, message: InboundMessage, user_email: str | None, required: bool = False
    ) -> Participant | None:
        if not required and user_email and message.sender.lower() == user_email.lower():
            return None
        try:
            return Participant(email=message.sender, name=message.sender_name)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Sender {message.sender!r} is not a valid email address", field="sender"
            ) from e
