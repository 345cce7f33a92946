"""
Lifecycle state machine for meeting requests.

The only component that changes `status`. Every transition is one atomic
repository update guarded by a compare-and-set on the status it was
validated against; a lost race surfaces as ConcurrentModificationError and
is never retried here.
"""

from stina.errors import InvalidTransitionError, MeetingRequestNotFoundError, ValidationError
from stina.infrastructure.observability.logging import get_logger, log_transition
from stina.models.domain.meeting_request_domain import (
    MeetingRequest,
    MeetingRequestStatus,
    MeetingRequestUpdate,
)
from stina.repositories.meeting_request_repository import MeetingRequestRepository

logger = get_logger(__name__)

S = MeetingRequestStatus

TRANSITIONS: dict[MeetingRequestStatus, frozenset[MeetingRequestStatus]] = {
    S.ANALYSING_EMAIL: frozenset({S.PROCESSING_WITH_STINA, S.CANCELLED}),
    S.PROCESSING_WITH_STINA: frozenset({S.CONTEXT_COLLECTION, S.CANCELLED}),
    S.CONTEXT_COLLECTION: frozenset({S.SCHEDULED, S.PENDING_REPLY, S.CANCELLED}),
    S.PENDING_REPLY: frozenset({S.CONTEXT_COLLECTION, S.SCHEDULED, S.CANCELLED}),
    S.SCHEDULED: frozenset({S.RESCHEDULED, S.COMPLETED, S.CANCELLED}),
    S.RESCHEDULED: frozenset({S.SCHEDULED, S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}


def can_transition(current: MeetingRequestStatus, target: MeetingRequestStatus) -> bool:
    return target in TRANSITIONS[current]


def validate_transition(current: MeetingRequestStatus, target: MeetingRequestStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


class LifecycleStateMachine:
    def __init__(self, repository: MeetingRequestRepository):
        self.repository = repository

    async def _load(self, meeting_request_id: str) -> MeetingRequest:
        request = await self.repository.get(meeting_request_id)
        if request is None:
            raise MeetingRequestNotFoundError(meeting_request_id)
        return request

    async def apply_transition(
        self,
        meeting_request_id: str,
        target: MeetingRequestStatus,
        fields: MeetingRequestUpdate | None = None,
        trigger: str = "api",
    ) -> MeetingRequest:
        """
        Move a request to `target`, writing `fields` in the same update.

        Raises:
            MeetingRequestNotFoundError: unknown id
            InvalidTransitionError: no edge from the current status to `target`
            ValidationError: fields would break an aggregate invariant
            ConcurrentModificationError: status changed since it was read
        """
        current = await self._load(meeting_request_id)
        validate_transition(current.status, target)

        update = (fields or MeetingRequestUpdate()).model_copy(update={"status": target})

        if target == S.RESCHEDULED:
            if update.scheduled_event is not None:
                raise ValidationError(
                    "A reschedule clears the booked event; book the new slot separately",
                    field="scheduled_event",
                )
            update.clear_scheduled_event = True
        elif target == S.CANCELLED:
            update.clear_scheduled_event = True

        updated = await self.repository.update(
            meeting_request_id, update, expected_status=current.status
        )

        log_transition(
            meeting_request_id,
            from_status=current.status.value,
            to_status=target.value,
            trigger=trigger,
        )
        return updated

    async def apply_fields(
        self,
        meeting_request_id: str,
        fields: MeetingRequestUpdate,
        expected_status: MeetingRequestStatus | None = None,
    ) -> MeetingRequest:
        """Write non-status fields, optionally pinned to the status they were derived from."""
        if fields.status is not None:
            raise ValidationError("Status changes must go through apply_transition", field="status")

        updated = await self.repository.update(
            meeting_request_id, fields, expected_status=expected_status
        )
        logger.debug(
            "Meeting request fields updated",
            meeting_request_id=meeting_request_id,
            status=updated.status.value,
        )
        return updated
