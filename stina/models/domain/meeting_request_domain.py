# stina/models/domain/meeting_request_domain.py
"""
Meeting Request Domain Models
The aggregate root tracking one scheduling conversation end-to-end, plus the
partial-update value that every write goes through.
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from stina.errors import ValidationError
from stina.models.domain.extraction_domain import EMAIL_PATTERN, ExtractionRecord
from stina.models.domain.preferences_domain import ParticipantPreferences


class MeetingRequestStatus(StrEnum):
    ANALYSING_EMAIL = "analysing_email"
    PROCESSING_WITH_STINA = "processing_with_stina"
    CONTEXT_COLLECTION = "context_collection"
    PENDING_REPLY = "pending_reply"
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses in which a booked calendar event may exist.
BOOKED_STATUSES = frozenset(
    {
        MeetingRequestStatus.SCHEDULED,
        MeetingRequestStatus.RESCHEDULED,
        MeetingRequestStatus.COMPLETED,
    }
)

TERMINAL_STATUSES = frozenset({MeetingRequestStatus.COMPLETED, MeetingRequestStatus.CANCELLED})

# Extraction pre-stage, only used for email-originated requests.
PRE_STAGE_STATUSES = frozenset(
    {MeetingRequestStatus.ANALYSING_EMAIL, MeetingRequestStatus.PROCESSING_WITH_STINA}
)


class CommunicationType(StrEnum):
    EMAIL = "email"
    TEXT = "text"
    WHATSAPP = "whatsapp"
    CHAT = "chat"


class CreatorSource(StrEnum):
    EMAIL = "email"
    TEXT = "text"
    WHATSAPP = "whatsapp"
    CHAT = "chat"
    MANUAL = "manual"


class UrgencyLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Participant(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    name: str | None = None
    is_registered_user: bool = False
    preferences: ParticipantPreferences | None = None

    @property
    def key(self) -> str:
        return self.email.strip().lower()


class Creator(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    source: CreatorSource


class MeetingContext(BaseModel):
    summary: str = ""


class ProposedTimeLocation(BaseModel):
    name: str
    address: str | None = None
    lat: float | None = None
    lng: float | None = None


class ProposedTime(BaseModel):
    start: datetime
    end: datetime
    timezone: str
    location: ProposedTimeLocation | None = None
    note: str | None = None

    @model_validator(mode="after")
    def _check_window(self) -> "ProposedTime":
        if self.end <= self.start:
            raise ValueError("proposed time must end after it starts")
        return self


class ScheduledEvent(BaseModel):
    external_event_id: str
    calendar_id: str
    start: datetime
    end: datetime


class Communication(BaseModel):
    id: str
    type: CommunicationType
    content: str
    sender: str
    timestamp: datetime
    processed: bool = False
    subject: str | None = None
    thread_id: str | None = None


class MeetingMetadata(BaseModel):
    location: str | None = None
    agenda: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    urgency: UrgencyLevel | None = None


class ProgressInfo(BaseModel):
    percent: int = Field(ge=0, le=100)
    note: str | None = None


class FailureRecord(BaseModel):
    """Inspectable reason left behind by a failed stage."""

    stage: Literal["extraction", "orchestration", "ingestion"]
    error_type: str
    reason: str
    occurred_at: datetime


class MeetingRequest(BaseModel):
    """Aggregate root. Mutated only through MeetingRequestUpdate."""

    id: str
    status: MeetingRequestStatus
    participants: list[Participant]
    creator: Creator
    context: MeetingContext = Field(default_factory=MeetingContext)
    proposed_times: list[ProposedTime] = Field(default_factory=list)
    scheduled_event: ScheduledEvent | None = None
    communications: list[Communication] = Field(default_factory=list)
    metadata: MeetingMetadata = Field(default_factory=MeetingMetadata)
    extraction_result: ExtractionRecord | None = None
    progress: ProgressInfo | None = None
    last_failure: FailureRecord | None = None
    created_at: datetime
    updated_at: datetime

    def unprocessed_communications(self) -> list[Communication]:
        """Unprocessed communications, oldest first."""
        pending = [c for c in self.communications if not c.processed]
        return sorted(pending, key=lambda c: c.timestamp)

    def has_successful_extraction(self) -> bool:
        return self.extraction_result is not None and self.extraction_result.succeeded

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def involves(self, email: str) -> bool:
        key = email.strip().lower()
        return self.creator.email.lower() == key or any(p.key == key for p in self.participants)

    def find_communication(self, communication_id: str) -> Communication | None:
        return next((c for c in self.communications if c.id == communication_id), None)

    def to_document(self) -> dict[str, Any]:
        """JSON-safe representation for the document store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "MeetingRequest":
        return cls.model_validate(document)


class MeetingRequestUpdate(BaseModel):
    """
    Partial update applied atomically to the stored document.

    Communication changes are expressed as appends and processed-id sets
    rather than list replacement, so a concurrent append is never lost.
    """

    status: MeetingRequestStatus | None = None
    context_summary: str | None = None
    proposed_times: list[ProposedTime] | None = None
    scheduled_event: ScheduledEvent | None = None
    clear_scheduled_event: bool = False
    metadata: MeetingMetadata | None = None
    participants: list[Participant] = Field(default_factory=list)
    append_communications: list[Communication] = Field(default_factory=list)
    processed_communication_ids: list[str] = Field(default_factory=list)
    extraction_result: ExtractionRecord | None = None
    progress: ProgressInfo | None = None
    last_failure: FailureRecord | None = None
    clear_last_failure: bool = False


def utc_now() -> datetime:
    return datetime.now(UTC)


def next_updated_at(previous: datetime, now: datetime | None = None) -> datetime:
    """Return a timestamp strictly greater than `previous`."""
    now = now or utc_now()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def merge_participants(existing: list[Participant], incoming: list[Participant]) -> list[Participant]:
    """Merge by case-insensitive email; known fields are updated in place, never duplicated."""
    merged = [p.model_copy() for p in existing]
    index = {p.key: i for i, p in enumerate(merged)}

    for participant in incoming:
        position = index.get(participant.key)
        if position is None:
            index[participant.key] = len(merged)
            merged.append(participant.model_copy())
            continue

        current = merged[position]
        merged[position] = current.model_copy(
            update={
                "name": participant.name or current.name,
                "is_registered_user": current.is_registered_user or participant.is_registered_user,
                "preferences": participant.preferences or current.preferences,
            }
        )

    return merged


def validate_invariants(request: MeetingRequest) -> None:
    """Raise ValidationError if the aggregate breaks a structural invariant."""
    if not request.participants:
        raise ValidationError("A meeting request needs at least one participant", field="participants")

    if request.scheduled_event is not None and request.status not in BOOKED_STATUSES:
        raise ValidationError(
            f"scheduled_event cannot be set while status is {request.status}",
            field="scheduled_event",
        )

    if not request.proposed_times and request.status in BOOKED_STATUSES:
        raise ValidationError(
            f"proposed_times cannot be empty while status is {request.status}",
            field="proposed_times",
        )

    keys = [p.key for p in request.participants]
    if len(keys) != len(set(keys)):
        raise ValidationError(
            "Participants must have distinct email addresses", field="participants"
        )

    seen: set[str] = set()
    for communication in request.communications:
        if communication.id in seen:
            raise ValidationError(
                f"Duplicate communication id {communication.id}", field="communications"
            )
        seen.add(communication.id)


def apply_update(
    request: MeetingRequest, update: MeetingRequestUpdate, now: datetime | None = None
) -> MeetingRequest:
    """
    Apply a partial update and return the new aggregate.

    Does not check transition edges (that is the state machine's job) but
    does enforce the structural invariants and the write-once fields.
    """
    data = request.model_copy(deep=True)

    if update.status is not None:
        data.status = update.status

    if update.context_summary is not None:
        data.context = MeetingContext(summary=update.context_summary)

    if update.proposed_times is not None:
        data.proposed_times = [t.model_copy() for t in update.proposed_times]

    if update.clear_scheduled_event:
        data.scheduled_event = None
    if update.scheduled_event is not None:
        if data.scheduled_event is not None:
            raise ValidationError(
                "scheduled_event is already set; reschedule before booking again",
                field="scheduled_event",
            )
        data.scheduled_event = update.scheduled_event

    if update.metadata is not None:
        merged = data.metadata.model_dump()
        merged.update(update.metadata.model_dump(exclude_none=True))
        data.metadata = MeetingMetadata.model_validate(merged)

    if update.participants:
        data.participants = merge_participants(data.participants, update.participants)

    if update.append_communications:
        data.communications = data.communications + [
            c.model_copy() for c in update.append_communications
        ]

    if update.processed_communication_ids:
        wanted = set(update.processed_communication_ids)
        known = {c.id for c in data.communications}
        missing = wanted - known
        if missing:
            raise ValidationError(
                f"Unknown communication id(s): {', '.join(sorted(missing))}",
                field="processed_communication_ids",
            )
        data.communications = [
            c.model_copy(update={"processed": True}) if c.id in wanted else c
            for c in data.communications
        ]

    if update.extraction_result is not None:
        if data.extraction_result is not None and data.extraction_result.succeeded:
            raise ValidationError(
                "extraction_result is immutable once extraction has succeeded",
                field="extraction_result",
            )
        data.extraction_result = update.extraction_result

    if update.progress is not None:
        data.progress = update.progress

    if update.clear_last_failure:
        data.last_failure = None
    if update.last_failure is not None:
        data.last_failure = update.last_failure

    data.updated_at = next_updated_at(request.updated_at, now)
    validate_invariants(data)
    return data


class MeetingRequestFilters(BaseModel):
    """Query filters for listing meeting requests."""

    statuses: list[MeetingRequestStatus] | None = None
    participant: str | None = None
    creator_email: str | None = None
    urgency: UrgencyLevel | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    thread_id: str | None = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)

    def matches(self, request: MeetingRequest) -> bool:
        if self.statuses and request.status not in self.statuses:
            return False
        if self.participant:
            key = self.participant.strip().lower()
            if not any(p.key == key for p in request.participants):
                return False
        if self.creator_email and request.creator.email.lower() != self.creator_email.lower():
            return False
        if self.urgency and request.metadata.urgency != self.urgency:
            return False
        if self.created_from and request.created_at < self.created_from:
            return False
        if self.created_to and request.created_at > self.created_to:
            return False
        if self.thread_id and not any(c.thread_id == self.thread_id for c in request.communications):
            return False
        return True


class MeetingRequestCreate(BaseModel):
    """Creation payload. The initial status follows the creator's channel."""

    creator: Creator
    participants: list[Participant] = Field(min_length=1)
    context_summary: str = ""
    metadata: MeetingMetadata = Field(default_factory=MeetingMetadata)
    communications: list[Communication] = Field(default_factory=list)


def initial_status_for(source: CreatorSource) -> MeetingRequestStatus:
    """Email-originated requests go through the extraction pre-stage first."""
    if source == CreatorSource.EMAIL:
        return MeetingRequestStatus.ANALYSING_EMAIL
    return MeetingRequestStatus.CONTEXT_COLLECTION
