# stina/models/api/meeting_request_response.py
"""
Meeting request API response models.
Used by routes for output formatting.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from stina.models.domain.extraction_domain import ExtractionRecord
from stina.models.domain.meeting_request_domain import (
    Communication,
    Creator,
    FailureRecord,
    MeetingMetadata,
    MeetingRequest,
    MeetingRequestStatus,
    Participant,
    ProgressInfo,
    ProposedTime,
    ScheduledEvent,
)
from stina.services.orchestration.orchestrator import OrchestrationOutcome


class MeetingRequestResponse(BaseModel):
    """Response model for one meeting request."""

    id: str = Field(..., description="Meeting request ID")
    status: MeetingRequestStatus = Field(..., description="Lifecycle status")
    creator: Creator
    participants: list[Participant]
    summary: str = Field(default="", description="Current context summary")
    proposed_times: list[ProposedTime] = Field(default_factory=list)
    scheduled_event: ScheduledEvent | None = None
    communications: list[Communication] = Field(default_factory=list)
    pending_communications: int = Field(..., description="Unprocessed communications")
    metadata: MeetingMetadata
    extraction_result: ExtractionRecord | None = None
    progress: ProgressInfo | None = None
    last_failure: FailureRecord | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, request: MeetingRequest) -> "MeetingRequestResponse":
        return cls(
            id=request.id,
            status=request.status,
            creator=request.creator,
            participants=request.participants,
            summary=request.context.summary,
            proposed_times=request.proposed_times,
            scheduled_event=request.scheduled_event,
            communications=request.communications,
            pending_communications=len(request.unprocessed_communications()),
            metadata=request.metadata,
            extraction_result=request.extraction_result,
            progress=request.progress,
            last_failure=request.last_failure,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )


class MeetingRequestListResponse(BaseModel):
    meeting_requests: list[MeetingRequestResponse] = Field(..., description="Matching requests")
    count: int = Field(..., description="Number of requests in this page")
    limit: int
    offset: int


class OrchestrationResponse(BaseModel):
    """Response for a completed orchestration run."""

    meeting_request_id: str
    decision: str = Field(..., description="book, propose, request_clarification or cancel")
    status: MeetingRequestStatus
    rounds: int = Field(..., description="Planning rounds used")
    tool_calls: int = Field(..., description="Tool calls executed")
    processed_communication_ids: list[str] = Field(default_factory=list)
    proposed_times: list[ProposedTime] = Field(default_factory=list)
    scheduled_event: ScheduledEvent | None = None
    reason: str | None = None

    @classmethod
    def from_outcome(
        cls, outcome: OrchestrationOutcome, request: MeetingRequest
    ) -> "OrchestrationResponse":
        return cls(
            meeting_request_id=outcome.meeting_request_id,
            decision=outcome.decision.kind,
            status=outcome.status,
            rounds=outcome.rounds,
            tool_calls=outcome.tool_calls,
            processed_communication_ids=outcome.processed_communication_ids,
            proposed_times=request.proposed_times,
            scheduled_event=outcome.scheduled_event,
            reason=outcome.decision.reason,
        )


class ProcessingAcceptedResponse(BaseModel):
    meeting_request_id: str
    accepted: bool = True
    message: str = "Processing started"
