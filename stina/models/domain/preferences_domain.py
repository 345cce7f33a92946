# stina/models/domain/preferences_domain.py
"""
Preference and contact domain models.

Structured replacements for the free-form preference blobs that used to be
merged into user and contact documents: named fields plus one bounded
free-text `notes` field.
"""

from datetime import datetime, time
from typing import Literal

from pydantic import BaseModel, Field, field_validator

MeetingType = Literal["in-person", "virtual", "hybrid"]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

MAX_NOTES_LENGTH = 2000


class WorkingHours(BaseModel):
    """Daily working window, in the owner's timezone."""

    start: str = Field(default="09:00", pattern=r"^\d{2}:\d{2}$")
    end: str = Field(default="17:00", pattern=r"^\d{2}:\d{2}$")
    days: list[str] = Field(default_factory=lambda: list(WEEKDAYS[:5]))

    @field_validator("days")
    @classmethod
    def _normalise_days(cls, days: list[str]) -> list[str]:
        normalised = [day.strip().lower() for day in days]
        unknown = [day for day in normalised if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekday(s): {', '.join(unknown)}")
        return normalised

    def start_time(self) -> time:
        return time.fromisoformat(self.start)

    def end_time(self) -> time:
        return time.fromisoformat(self.end)

    def includes_weekday(self, weekday_index: int) -> bool:
        """weekday_index follows datetime.weekday() (Monday == 0)."""
        return WEEKDAYS[weekday_index] in self.days


class UserPreferences(BaseModel):
    """Requester preferences used to build the planning context."""

    default_meeting_type: MeetingType = "virtual"
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    timezone: str = "UTC"
    meeting_buffer_minutes: int = Field(default=15, ge=0, le=240)
    preferred_locations: list[str] = Field(default_factory=list)
    food_preferences: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)

    def to_context_lines(self) -> list[str]:
        return [
            f"Working hours: {self.working_hours.start} - {self.working_hours.end}",
            f"Working days: {', '.join(self.working_hours.days)}",
            f"Time zone: {self.timezone}",
            f"Default meeting type: {self.default_meeting_type}",
            f"Meeting buffer: {self.meeting_buffer_minutes} minutes",
            f"Preferred locations: {', '.join(self.preferred_locations) or 'None specified'}",
            f"Food preferences: {', '.join(self.food_preferences) or 'None specified'}",
            f"Other preferences: {self.notes or 'None'}",
        ]


class ParticipantPreferences(BaseModel):
    """What we know about how a participant likes to meet."""

    meeting_type: MeetingType | None = None
    timezone: str | None = None
    working_hours: WorkingHours | None = None
    relationship: str | None = None
    work_context: str | None = None
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)


class ContactRecord(BaseModel):
    """Enriched contact returned by the contact directory."""

    email: str
    name: str | None = None
    title: str | None = None
    company: str | None = None
    timezone: str | None = None
    working_hours: WorkingHours | None = None
    meeting_preferences: list[MeetingType] = Field(default_factory=list)
    last_interaction: datetime | None = None
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)
