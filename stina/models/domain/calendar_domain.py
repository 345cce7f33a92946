# stina/models/domain/calendar_domain.py
"""
Calendar Domain Models
Free/busy periods and the slot finder behind the check_schedule tool.
"""

import math
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from stina.models.domain.preferences_domain import WorkingHours

SLOT_STEP_MINUTES = 15
DEFAULT_SLOT_LIMIT = 5


def parse_iso_datetime(value: str) -> datetime:
    """Parse an RFC3339 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class BusyPeriod:
    """A block of time the calendar owner is unavailable."""

    def __init__(self, start: datetime, end: datetime):
        self.start = start
        self.end = end

    @classmethod
    def from_google(cls, data: dict) -> "BusyPeriod":
        return cls(parse_iso_datetime(data["start"]), parse_iso_datetime(data["end"]))

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start

    def padded(self, buffer_minutes: int) -> "BusyPeriod":
        pad = timedelta(minutes=buffer_minutes)
        return BusyPeriod(self.start - pad, self.end + pad)

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


class CreatedEvent:
    """Result of booking an event on the provider calendar."""

    def __init__(self, event_id: str, calendar_id: str, start: datetime, end: datetime, html_link: str | None = None):
        self.event_id = event_id
        self.calendar_id = calendar_id
        self.start = start
        self.end = end
        self.html_link = html_link

    @classmethod
    def from_google(cls, data: dict, calendar_id: str) -> "CreatedEvent":
        return cls(
            event_id=data["id"],
            calendar_id=calendar_id,
            start=parse_iso_datetime(data["start"]["dateTime"]),
            end=parse_iso_datetime(data["end"]["dateTime"]),
            html_link=data.get("htmlLink"),
        )


class CalendarAvailability:
    """
    Availability of one calendar over a window.

    Slots are computed against working hours (in the owner's timezone), with
    every busy period widened by the meeting buffer, and returned earliest
    first.
    """

    def __init__(
        self,
        window_start: datetime,
        window_end: datetime,
        busy_periods: list[BusyPeriod],
        working_hours: WorkingHours,
        timezone: str,
        buffer_minutes: int = 0,
    ):
        self.window_start = window_start
        self.window_end = window_end
        self.busy_periods = sorted(busy_periods, key=lambda p: p.start)
        self.working_hours = working_hours
        self.timezone = timezone
        self.buffer_minutes = buffer_minutes

    def working_windows(self) -> list[tuple[datetime, datetime]]:
        """Working-hour windows that intersect the requested window."""
        tz = ZoneInfo(self.timezone)
        local_start = self.window_start.astimezone(tz)
        local_end = self.window_end.astimezone(tz)

        windows = []
        day = local_start.date()
        while day <= local_end.date():
            if self.working_hours.includes_weekday(day.weekday()):
                open_at = datetime.combine(day, self.working_hours.start_time(), tzinfo=tz)
                close_at = datetime.combine(day, self.working_hours.end_time(), tzinfo=tz)
                start = max(open_at, local_start)
                end = min(close_at, local_end)
                if start < end:
                    windows.append((start, end))
            day += timedelta(days=1)
        return windows

    def get_free_periods(self) -> list[tuple[datetime, datetime]]:
        """Free periods inside working hours, after applying the buffer."""
        blocked = [p.padded(self.buffer_minutes) for p in self.busy_periods]
        free = []

        for window_start, window_end in self.working_windows():
            current = window_start
            for period in blocked:
                if not period.overlaps(current, window_end):
                    continue
                if current < period.start:
                    free.append((current, period.start))
                current = max(current, period.end)
            if current < window_end:
                free.append((current, window_end))

        return free

    def find_slots(self, duration_minutes: int, limit: int = DEFAULT_SLOT_LIMIT) -> list[dict[str, Any]]:
        """Earliest-first slots of the given duration, aligned to the slot step."""
        duration = timedelta(minutes=duration_minutes)
        slots = []

        for free_start, free_end in self.get_free_periods():
            start = _align_up(free_start, SLOT_STEP_MINUTES)
            while start + duration <= free_end and len(slots) < limit:
                slots.append(
                    {
                        "start": start.isoformat(),
                        "end": (start + duration).isoformat(),
                        "timezone": self.timezone,
                    }
                )
                # Next candidate leaves room for the buffer after this one
                start = _align_up(start + duration + timedelta(minutes=self.buffer_minutes), SLOT_STEP_MINUTES)
            if len(slots) >= limit:
                break

        return slots

    def get_recommendations(self, slots: list[dict[str, Any]], duration_minutes: int) -> list[str]:
        if not slots:
            return [
                "No available slots found in the requested timeframe.",
                "Ask the requester for an alternative timeframe.",
            ]

        recommendations = [
            f"Found {len(slots)} potential meeting slots for {duration_minutes} minute duration."
        ]
        if self.buffer_minutes:
            recommendations.append(
                f"Slots keep a {self.buffer_minutes}-minute buffer around existing meetings."
            )
        if len(slots) > 1:
            recommendations.append("Offer the first two or three slots, earliest first.")
        return recommendations

    def to_dict(self, duration_minutes: int, limit: int = DEFAULT_SLOT_LIMIT) -> dict[str, Any]:
        slots = self.find_slots(duration_minutes, limit)
        return {
            "available_slots": slots,
            "busy_periods": [p.to_dict() for p in self.busy_periods],
            "timezone": self.timezone,
            "duration_minutes": duration_minutes,
            "recommendations": self.get_recommendations(slots, duration_minutes),
        }


def _align_up(moment: datetime, step_minutes: int) -> datetime:
    """Round up to the next multiple of step_minutes past the hour."""
    base = moment.replace(second=0, microsecond=0)
    if base < moment:
        base += timedelta(minutes=1)
    minutes = math.ceil(base.minute / step_minutes) * step_minutes
    return base.replace(minute=0) + timedelta(minutes=minutes)
