# stina/models/domain/extraction_domain.py
"""
Structured meeting intent produced by the extraction stage.

`MeetingIntent` doubles as the output schema handed to the language model,
so validation against it is the all-or-nothing contract of extraction.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class Initiator(BaseModel):
    name: str
    email: str = Field(pattern=EMAIL_PATTERN)


class Invitee(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    name: str | None = None
    relationship: str | None = None
    work_context: str | None = None


class MeetingIntent(BaseModel):
    """What the communication asks for. Time phrases are kept verbatim."""

    initiator: Initiator
    invitees: list[Invitee]
    meeting_intent: str = Field(min_length=1)
    requested_timeframe: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0, le=24 * 60)
    location_hint: str | None = None
    other_notes: str | None = None

    def to_context_lines(self) -> list[str]:
        invitees = ", ".join(
            f"{invitee.name or 'Unknown'} ({invitee.email})" for invitee in self.invitees
        )
        duration = f"{self.duration_minutes} minutes" if self.duration_minutes else "Not specified"
        return [
            f"Initiator: {self.initiator.name} ({self.initiator.email})",
            f"Invitees: {invitees or 'None identified'}",
            f"Meeting intent: {self.meeting_intent}",
            f"Requested timeframe: {self.requested_timeframe or 'Not specified'}",
            f"Duration: {duration}",
            f"Location hint: {self.location_hint or 'Not specified'}",
            f"Other notes: {self.other_notes or 'None'}",
        ]


class ExtractionRecord(BaseModel):
    """Outcome of one extraction attempt, stored on the meeting request."""

    status: Literal["succeeded", "failed"]
    communication_id: str | None = None
    intent: MeetingIntent | None = None
    error: str | None = None
    details: str | None = None
    attempted_at: datetime

    @model_validator(mode="after")
    def _check_shape(self) -> "ExtractionRecord":
        if self.status == "succeeded" and self.intent is None:
            raise ValueError("a succeeded extraction must carry an intent")
        if self.status == "failed" and not self.error:
            raise ValueError("a failed extraction must carry an error")
        return self

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"
