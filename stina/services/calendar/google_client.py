"""
Google Calendar v3 adapter: free/busy lookup, event booking, and event
deletion (used to compensate a booking whose commit failed).

Access tokens are minted and refreshed outside this service; the adapter
asks its token provider for a fresh one per call.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from stina.errors import ProviderError
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.calendar_domain import BusyPeriod, CreatedEvent
from stina.services.provider_http import ProviderHttpClient

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

TokenProvider = Callable[[], Awaitable[str]]


class CalendarProvider(Protocol):
    calendar_id: str

    async def list_free_busy(self, start: datetime, end: datetime) -> list[BusyPeriod]: ...

    async def create_event(
        self,
        summary: str,
        start: datetime,
        end: datetime,
        timezone: str,
        attendees: list[str] | None = None,
        description: str = "",
        location: str = "",
    ) -> CreatedEvent: ...

    async def delete_event(self, event_id: str) -> None: ...


def static_token(access_token: str | None) -> TokenProvider:
    async def provide() -> str:
        if not access_token:
            raise ProviderError("Calendar access token is not configured", kind="unavailable")
        return access_token

    return provide


class GoogleCalendarClient(ProviderHttpClient):
    provider_name = "Google Calendar"

    def __init__(
        self,
        token_provider: TokenProvider,
        calendar_id: str = CALENDAR_PRIMARY,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.token_provider = token_provider
        self.calendar_id = calendar_id

    async def _get_auth_headers(self) -> dict:
        access_token = await self.token_provider()
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def list_free_busy(self, start: datetime, end: datetime) -> list[BusyPeriod]:
        """
        Busy periods on the configured calendar between start and end.

        Raises:
            ProviderError: classified by HTTP status
        """
        url = f"{CALENDAR_API_BASE_URL}/freeBusy"
        query_data = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "items": [{"id": self.calendar_id}],
        }

        logger.info(
            "Checking calendar availability",
            start_time=start.isoformat(),
            end_time=end.isoformat(),
            calendar_id=self.calendar_id,
        )

        response = await self._request_with_retry(
            "POST", url, headers=await self._get_auth_headers(), json=query_data
        )
        data = self._handle_api_response(response, "free_busy")

        calendar_data = data.get("calendars", {}).get(self.calendar_id, {})
        if calendar_data.get("errors"):
            reason = calendar_data["errors"][0].get("reason", "unknown")
            kind = "not_found" if reason == "notFound" else "failed"
            raise ProviderError(f"Calendar {self.calendar_id} free/busy error: {reason}", kind=kind)

        busy = [BusyPeriod.from_google(period) for period in calendar_data.get("busy", [])]
        logger.info("Availability check completed", busy_periods_count=len(busy))
        return busy

    async def create_event(
        self,
        summary: str,
        start: datetime,
        end: datetime,
        timezone: str,
        attendees: list[str] | None = None,
        description: str = "",
        location: str = "",
    ) -> CreatedEvent:
        url = f"{CALENDAR_API_BASE_URL}/calendars/{self.calendar_id}/events"
        event_data = {
            "summary": summary,
            "description": description,
            "location": location,
            "start": {"dateTime": start.isoformat(), "timeZone": timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": timezone},
        }
        if attendees:
            event_data["attendees"] = [{"email": email} for email in attendees]

        logger.info(
            "Creating calendar event",
            summary=summary,
            start_time=start.isoformat(),
            calendar_id=self.calendar_id,
        )

        response = await self._request_with_retry(
            "POST", url, idempotent=False, headers=await self._get_auth_headers(), json=event_data
        )
        data = self._handle_api_response(response, "create_event")

        event = CreatedEvent.from_google(data, self.calendar_id)
        logger.info("Event created successfully", event_id=event.event_id)
        return event

    async def delete_event(self, event_id: str) -> None:
        url = f"{CALENDAR_API_BASE_URL}/calendars/{self.calendar_id}/events/{event_id}"

        logger.info("Deleting calendar event", event_id=event_id, calendar_id=self.calendar_id)

        response = await self._request_with_retry(
            "DELETE", url, headers=await self._get_auth_headers()
        )
        # 410 Gone means it was already deleted
        if response.status_code in (204, 410):
            return
        self._handle_api_response(response, "delete_event")
