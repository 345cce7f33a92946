# stina/models/api/meeting_request_request.py
"""
Meeting request API request models.
Used by routes for input validation.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from stina.models.domain.extraction_domain import EMAIL_PATTERN
from stina.models.domain.meeting_request_domain import (
    Communication,
    CommunicationType,
    Creator,
    CreatorSource,
    MeetingMetadata,
    MeetingRequestCreate,
    MeetingRequestStatus,
    MeetingRequestUpdate,
    Participant,
    ProgressInfo,
    ProposedTime,
    utc_now,
)


class CommunicationRequest(BaseModel):
    """An inbound message to append to a meeting request."""

    id: str = Field(default_factory=lambda: f"comm_{uuid.uuid4().hex}", description="Communication ID")
    type: CommunicationType = Field(default=CommunicationType.EMAIL, description="Channel")
    content: str = Field(..., min_length=1, max_length=20000, description="Message text")
    sender: str = Field(..., min_length=1, description="Sender address or handle")
    timestamp: datetime = Field(default_factory=utc_now, description="When it was received")
    subject: str | None = Field(default=None, max_length=500, description="Subject line")
    thread_id: str | None = Field(default=None, description="Conversation thread ID")

    def to_domain(self) -> Communication:
        return Communication(
            id=self.id,
            type=self.type,
            content=self.content,
            sender=self.sender,
            timestamp=self.timestamp,
            subject=self.subject,
            thread_id=self.thread_id,
        )


class CreateMeetingRequestRequest(BaseModel):
    """Request for creating a meeting request."""

    creator_email: str = Field(..., pattern=EMAIL_PATTERN, description="Requesting user")
    source: CreatorSource = Field(default=CreatorSource.MANUAL, description="Originating channel")
    participants: list[Participant] = Field(..., min_length=1, description="People to meet")
    summary: str = Field(default="", max_length=2000, description="Initial context summary")
    metadata: MeetingMetadata = Field(default_factory=MeetingMetadata)
    communication: CommunicationRequest | None = Field(
        default=None, description="First message, stored unprocessed"
    )

    def to_domain(self) -> MeetingRequestCreate:
        return MeetingRequestCreate(
            creator=Creator(email=self.creator_email, source=self.source),
            participants=self.participants,
            context_summary=self.summary,
            metadata=self.metadata,
            communications=[self.communication.to_domain()] if self.communication else [],
        )


class TransitionRequest(BaseModel):
    """Request for moving a meeting request to another status."""

    status: MeetingRequestStatus = Field(..., description="Target status")
    context_summary: str | None = Field(default=None, max_length=2000)
    proposed_times: list[ProposedTime] | None = Field(default=None)
    metadata: MeetingMetadata | None = Field(default=None)
    progress: ProgressInfo | None = Field(default=None)

    def to_fields(self) -> MeetingRequestUpdate:
        return MeetingRequestUpdate(
            context_summary=self.context_summary,
            proposed_times=self.proposed_times,
            metadata=self.metadata,
            progress=self.progress,
        )


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
