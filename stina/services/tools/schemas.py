"""
Input schemas for the fixed tool catalogue.

These models are both the validation contract and the JSON schema shown to
the planning model.
"""

import re
from datetime import datetime, timedelta

from pydantic import BaseModel, Field, model_validator

from stina.models.domain.extraction_domain import EMAIL_PATTERN
from stina.models.domain.meeting_request_domain import MeetingRequestStatus

MAX_WINDOW = timedelta(days=31)


class TimeWindow(BaseModel):
    start: datetime = Field(description="ISO 8601 start of the search window")
    end: datetime = Field(description="ISO 8601 end of the search window")

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise ValueError("start and end must both carry a UTC offset or both omit it")
        if self.end <= self.start:
            raise ValueError("window end must be after start")
        if self.end - self.start > MAX_WINDOW:
            raise ValueError("window may span at most 31 days")
        return self


class CheckScheduleInput(BaseModel):
    """Find free slots on the requester's calendar."""

    window: TimeWindow
    duration_minutes: int = Field(ge=15, le=240)


class FindVenuesInput(BaseModel):
    """Search for meeting venues near a location."""

    location: str = Field(min_length=1, description="Address, area, postcode or 'lat,lng'")
    tags: list[str] = Field(min_length=1, description="e.g. coffee, lunch, meeting_room")
    radius_m: int = Field(default=2000, ge=100, le=5000)
    limit: int = Field(default=5, ge=1, le=10)


class SendMessageInput(BaseModel):
    """Send an email on the requester's behalf."""

    recipients: list[str] = Field(min_length=1)
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    thread_id: str | None = Field(default=None, description="Reply within this thread")
    watch: bool = Field(default=False, description="Track replies to this message")

    @model_validator(mode="after")
    def _check_recipients(self) -> "SendMessageInput":
        pattern = re.compile(EMAIL_PATTERN)
        bad = [r for r in self.recipients if not pattern.match(r)]
        if bad:
            raise ValueError(f"invalid recipient address(es): {', '.join(bad)}")
        return self


class UpdateRequestStatusInput(BaseModel):
    """Record progress on the meeting request being worked on."""

    meeting_request_id: str
    status: MeetingRequestStatus
    progress: int = Field(ge=0, le=100)
    note: str | None = Field(default=None, max_length=500)


class GetContactInput(BaseModel):
    """Look up what is known about a person."""

    identifier: str = Field(min_length=1, description="Email address or name")
    strict: bool = Field(default=False, description="Exact match only")
