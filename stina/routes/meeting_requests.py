"""
Meeting Request API Routes
HTTP endpoints over the SchedulingEngine. Scheduling errors map onto status
codes in one place; the reason string is always returned in `detail`.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from stina.dependencies import ServiceContainer, get_container, get_engine
from stina.errors import (
    ConcurrentModificationError,
    ExtractionError,
    InvalidTransitionError,
    MeetingRequestNotFoundError,
    OrchestrationError,
    PersistenceError,
    PlanningExhaustedError,
    RequestBusyError,
    SchedulingError,
    ValidationError,
)
from stina.infrastructure.observability.logging import get_logger
from stina.models.api.meeting_request_request import (
    CancelRequest,
    CommunicationRequest,
    CreateMeetingRequestRequest,
    TransitionRequest,
)
from stina.models.api.meeting_request_response import (
    MeetingRequestListResponse,
    MeetingRequestResponse,
    OrchestrationResponse,
    ProcessingAcceptedResponse,
)
from stina.models.domain.extraction_domain import ExtractionRecord
from stina.models.domain.meeting_request_domain import (
    MeetingRequestFilters,
    MeetingRequestStatus,
    UrgencyLevel,
)
from stina.services.scheduling_engine import SchedulingEngine

logger = get_logger(__name__)

router = APIRouter(prefix="/meeting-requests", tags=["meeting-requests"])

ERROR_STATUS_CODES: list[tuple[type[SchedulingError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (MeetingRequestNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (RequestBusyError, status.HTTP_409_CONFLICT),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (ExtractionError, status.HTTP_502_BAD_GATEWAY),
    (PlanningExhaustedError, status.HTTP_502_BAD_GATEWAY),
    (OrchestrationError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_error(error: SchedulingError) -> HTTPException:
    status_code = next(
        (code for error_class, code in ERROR_STATUS_CODES if isinstance(error, error_class)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=status_code, detail=error.to_dict())


async def _check_access(engine: SchedulingEngine, meeting_request_id: str, user_email: str | None):
    """Enforced only when the caller identifies itself."""
    if user_email and not await engine.can_user_access(meeting_request_id, user_email):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a creator or participant of this meeting request",
        )


@router.post("", response_model=MeetingRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_meeting_request(
    body: CreateMeetingRequestRequest, engine: SchedulingEngine = Depends(get_engine)
):
    """Create a meeting request."""
    try:
        created = await engine.create_meeting_request(body.to_domain())
        return MeetingRequestResponse.from_domain(created)
    except SchedulingError as e:
        logger.warning("Create meeting request failed", error=e.reason)
        raise to_http_error(e)


@router.get("", response_model=MeetingRequestListResponse)
async def list_meeting_requests(
    engine: SchedulingEngine = Depends(get_engine),
    status_filter: str | None = Query(
        default=None, alias="status", description="Comma-separated statuses"
    ),
    participant: str | None = Query(default=None, description="Participant email"),
    creator: str | None = Query(default=None, description="Creator email"),
    urgency: UrgencyLevel | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    thread_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List meeting requests, newest first."""
    statuses = None
    if status_filter:
        try:
            statuses = [MeetingRequestStatus(s.strip()) for s in status_filter.split(",") if s.strip()]
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown status: {e}"
            )

    filters = MeetingRequestFilters(
        statuses=statuses,
        participant=participant,
        creator_email=creator,
        urgency=urgency,
        created_from=created_from,
        created_to=created_to,
        thread_id=thread_id,
        limit=limit,
        offset=offset,
    )
    try:
        requests = await engine.list_meeting_requests(filters)
    except SchedulingError as e:
        raise to_http_error(e)

    return MeetingRequestListResponse(
        meeting_requests=[MeetingRequestResponse.from_domain(r) for r in requests],
        count=len(requests),
        limit=limit,
        offset=offset,
    )


@router.get("/{meeting_request_id}", response_model=MeetingRequestResponse)
async def get_meeting_request(
    meeting_request_id: str,
    engine: SchedulingEngine = Depends(get_engine),
    x_user_email: str | None = Header(default=None),
):
    try:
        request = await engine.get_meeting_request(meeting_request_id)
    except SchedulingError as e:
        raise to_http_error(e)
    await _check_access(engine, meeting_request_id, x_user_email)
    return MeetingRequestResponse.from_domain(request)


@router.post("/{meeting_request_id}/communications", response_model=MeetingRequestResponse)
async def add_communication(
    meeting_request_id: str,
    body: CommunicationRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """Append an inbound message, unprocessed."""
    try:
        updated = await engine.ingest_communication(meeting_request_id, body.to_domain())
        return MeetingRequestResponse.from_domain(updated)
    except SchedulingError as e:
        raise to_http_error(e)


@router.post("/{meeting_request_id}/extraction", response_model=ExtractionRecord)
async def run_extraction(meeting_request_id: str, engine: SchedulingEngine = Depends(get_engine)):
    """Extract intent from the oldest unprocessed communication."""
    try:
        return await engine.run_extraction(meeting_request_id)
    except SchedulingError as e:
        logger.warning(
            "Extraction request failed", meeting_request_id=meeting_request_id, error=e.reason
        )
        raise to_http_error(e)


@router.post("/{meeting_request_id}/orchestration", response_model=OrchestrationResponse)
async def run_orchestration(meeting_request_id: str, engine: SchedulingEngine = Depends(get_engine)):
    """Plan and commit one decision, waiting for the result."""
    try:
        outcome = await engine.run_orchestration(meeting_request_id)
        request = await engine.get_meeting_request(meeting_request_id)
        return OrchestrationResponse.from_outcome(outcome, request)
    except SchedulingError as e:
        logger.warning(
            "Orchestration request failed", meeting_request_id=meeting_request_id, error=e.reason
        )
        raise to_http_error(e)


@router.post(
    "/{meeting_request_id}/process",
    response_model=ProcessingAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def process_in_background(
    meeting_request_id: str, container: ServiceContainer = Depends(get_container)
):
    """Run extraction and orchestration as a background task."""
    try:
        await container.engine.get_meeting_request(meeting_request_id)
    except SchedulingError as e:
        raise to_http_error(e)
    container.dispatch_processing(meeting_request_id)
    return ProcessingAcceptedResponse(meeting_request_id=meeting_request_id)


@router.post("/{meeting_request_id}/transitions", response_model=MeetingRequestResponse)
async def apply_transition(
    meeting_request_id: str,
    body: TransitionRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    try:
        updated = await engine.apply_transition(meeting_request_id, body.status, body.to_fields())
        return MeetingRequestResponse.from_domain(updated)
    except SchedulingError as e:
        raise to_http_error(e)


@router.delete("/{meeting_request_id}", response_model=MeetingRequestResponse)
async def cancel_meeting_request(
    meeting_request_id: str,
    body: CancelRequest | None = None,
    engine: SchedulingEngine = Depends(get_engine),
    x_user_email: str | None = Header(default=None),
):
    """Cancel a meeting request; a booked calendar event is removed."""
    await _check_access(engine, meeting_request_id, x_user_email)
    try:
        cancelled = await engine.cancel_meeting_request(
            meeting_request_id, reason=body.reason if body else None
        )
        return MeetingRequestResponse.from_domain(cancelled)
    except SchedulingError as e:
        raise to_http_error(e)
