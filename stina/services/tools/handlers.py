"""
Handlers for the fixed tool catalogue, bound to their collaborators by
build_tool_registry().
"""

from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from stina.errors import ToolExecutionError, ValidationError
from stina.infrastructure.audit import AuditLogger
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.calendar_domain import CalendarAvailability
from stina.models.domain.meeting_request_domain import (
    MeetingRequestStatus,
    MeetingRequestUpdate,
    ProgressInfo,
)
from stina.models.domain.places_domain import (
    build_search_query,
    place_type_for_tags,
    rank_venues,
    venue_recommendations,
)
from stina.repositories.contact_repository import ContactDirectory
from stina.services.calendar.google_client import CalendarProvider
from stina.services.lifecycle.state_machine import LifecycleStateMachine
from stina.services.messaging.mailslurp_client import MessagingProvider
from stina.services.places.google_places_client import PlacesProvider
from stina.services.tools.registry import ToolContext, ToolRegistry, ToolSpec
from stina.services.tools.schemas import (
    CheckScheduleInput,
    FindVenuesInput,
    GetContactInput,
    SendMessageInput,
    UpdateRequestStatusInput,
)

logger = get_logger(__name__)

CHECK_SCHEDULE = "check_schedule"
FIND_VENUES = "find_venues"
SEND_MESSAGE = "send_message"
UPDATE_REQUEST_STATUS = "update_request_status"
GET_CONTACT = "get_contact"

# Booking, completion and cancellation are terminal decisions, not tool calls
TOOL_SETTABLE_STATUSES = frozenset(
    {MeetingRequestStatus.CONTEXT_COLLECTION, MeetingRequestStatus.PENDING_REPLY}
)


def _localize(moment: datetime, timezone: str) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=ZoneInfo(timezone))
    return moment


class CheckScheduleHandler:
    def __init__(self, calendar: CalendarProvider):
        self.calendar = calendar

    async def __call__(self, arguments: CheckScheduleInput, context: ToolContext) -> dict[str, Any]:
        preferences = context.preferences
        start = _localize(arguments.window.start, preferences.timezone)
        end = _localize(arguments.window.end, preferences.timezone)

        busy = await self.calendar.list_free_busy(start, end)
        availability = CalendarAvailability(
            window_start=start,
            window_end=end,
            busy_periods=busy,
            working_hours=preferences.working_hours,
            timezone=preferences.timezone,
            buffer_minutes=preferences.meeting_buffer_minutes,
        )

        result = availability.to_dict(arguments.duration_minutes)
        result["window"] = {"start": start.isoformat(), "end": end.isoformat()}
        return result


class FindVenuesHandler:
    def __init__(self, places: PlacesProvider):
        self.places = places

    async def __call__(self, arguments: FindVenuesInput, context: ToolContext) -> dict[str, Any]:
        tags = [tag.strip().lower() for tag in arguments.tags if tag.strip()]
        places = await self.places.search(
            query=build_search_query(tags),
            location=arguments.location,
            radius_m=arguments.radius_m,
            place_type=place_type_for_tags(tags),
        )
        venues = rank_venues(places, tags, arguments.location, arguments.radius_m, arguments.limit)
        return {
            "location": arguments.location,
            "tags": tags,
            "radius_m": arguments.radius_m,
            "venues": [venue.model_dump() for venue in venues],
            "recommendations": venue_recommendations(venues, tags),
        }


class SendMessageHandler:
    def __init__(self, messaging: MessagingProvider):
        self.messaging = messaging

    async def __call__(self, arguments: SendMessageInput, context: ToolContext) -> dict[str, Any]:
        receipt = await self.messaging.send(
            recipients=arguments.recipients,
            subject=arguments.subject,
            body=arguments.body,
            thread_id=arguments.thread_id,
        )
        receipt = receipt.model_copy(update={"watching": arguments.watch})
        return receipt.model_dump(mode="json")


class UpdateRequestStatusHandler:
    def __init__(self, state_machine: LifecycleStateMachine):
        self.state_machine = state_machine

    async def __call__(
        self, arguments: UpdateRequestStatusInput, context: ToolContext
    ) -> dict[str, Any]:
        if arguments.meeting_request_id != context.meeting_request_id:
            raise ValidationError(
                "Only the meeting request being planned can be updated",
                field="meeting_request_id",
            )

        current = await self.state_machine.repository.get(context.meeting_request_id)
        if current is None:
            raise ToolExecutionError(UPDATE_REQUEST_STATUS, "Meeting request not found", kind="not_found")

        target = arguments.status
        if target != current.status and target not in TOOL_SETTABLE_STATUSES:
            raise ValidationError(
                f"Status {target.value} can only be reached through a decision",
                field="status",
            )

        fields = MeetingRequestUpdate(
            progress=ProgressInfo(percent=arguments.progress, note=arguments.note)
        )
        if target == current.status:
            updated = await self.state_machine.apply_fields(
                current.id, fields, expected_status=current.status
            )
        else:
            updated = await self.state_machine.apply_transition(
                current.id, target, fields=fields, trigger="tool"
            )

        return {
            "meeting_request_id": updated.id,
            "status": updated.status.value,
            "progress": arguments.progress,
            "note": arguments.note,
            "message": f"Meeting request updated to {updated.status.value} ({arguments.progress}%)",
        }


class GetContactHandler:
    def __init__(self, contacts: ContactDirectory):
        self.contacts = contacts

    async def __call__(self, arguments: GetContactInput, context: ToolContext) -> dict[str, Any]:
        contact = await self.contacts.find(arguments.identifier, strict=arguments.strict)
        if contact is None:
            raise ToolExecutionError(
                GET_CONTACT,
                f"No contact matches {arguments.identifier!r}",
                kind="not_found",
            )
        return contact.model_dump(mode="json")


def build_tool_registry(
    calendar: CalendarProvider,
    places: PlacesProvider,
    messaging: MessagingProvider,
    contacts: ContactDirectory,
    state_machine: LifecycleStateMachine,
    audit_logger: AuditLogger | None = None,
    read_timeout: float = 20.0,
) -> ToolRegistry:
    specs = [
        ToolSpec(
            name=CHECK_SCHEDULE,
            description=(
                "Check the requester's calendar between window.start and window.end and "
                "return free slots of duration_minutes (earliest first, inside working "
                "hours, with the meeting buffer applied), busy periods and recommendations."
            ),
            input_model=CheckScheduleInput,
            side_effect="read",
            handler=CheckScheduleHandler(calendar),
        ),
        ToolSpec(
            name=FIND_VENUES,
            description=(
                "Find venues near a location matching tags such as coffee, lunch or "
                "meeting_room, ranked by rating and proximity or popularity."
            ),
            input_model=FindVenuesInput,
            side_effect="read",
            handler=FindVenuesHandler(places),
        ),
        ToolSpec(
            name=SEND_MESSAGE,
            description=(
                "Send an email to participants. Pass thread_id to reply within an "
                "existing conversation."
            ),
            input_model=SendMessageInput,
            side_effect="write",
            handler=SendMessageHandler(messaging),
        ),
        ToolSpec(
            name=UPDATE_REQUEST_STATUS,
            description=(
                "Record progress (0-100) and a note on the meeting request being planned. "
                "Status may stay the same or move between context_collection and pending_reply."
            ),
            input_model=UpdateRequestStatusInput,
            side_effect="write",
            handler=UpdateRequestStatusHandler(state_machine),
        ),
        ToolSpec(
            name=GET_CONTACT,
            description=(
                "Look up a contact by email or name. strict=true requires an exact match. "
                "Returns not_found rather than guessing."
            ),
            input_model=GetContactInput,
            side_effect="read",
            handler=GetContactHandler(contacts),
        ),
    ]
    return ToolRegistry(specs, audit_logger=audit_logger, read_timeout=read_timeout)
