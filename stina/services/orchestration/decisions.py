"""
Terminal decisions the planner submits through the submit_decision function.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from stina.models.domain.meeting_request_domain import ProposedTime, ProposedTimeLocation

SUBMIT_DECISION = "submit_decision"

MAX_PROPOSED_SLOTS = 3

DecisionKind = Literal["book", "propose", "request_clarification", "cancel"]


class DecisionSlot(BaseModel):
    start: datetime
    end: datetime
    timezone: str | None = None
    location: ProposedTimeLocation | None = None
    note: str | None = None

    def to_proposed_time(self, default_timezone: str) -> ProposedTime:
        return ProposedTime(
            start=self.start,
            end=self.end,
            timezone=self.timezone or default_timezone,
            location=self.location,
            note=self.note,
        )


class PlanningDecision(BaseModel):
    """
    book: exactly one slot, which is booked on the calendar.
    propose: one to three slots offered to participants.
    request_clarification: no slots; waiting on a participant.
    cancel: no slots; a reason is required.
    """

    kind: DecisionKind
    slots: list[DecisionSlot] = Field(default_factory=list)
    summary: str | None = Field(default=None, description="Updated one-paragraph request summary")
    reason: str | None = Field(default=None, description="Why this decision was taken")
    event_title: str | None = Field(default=None, description="Calendar title when booking")

    @model_validator(mode="after")
    def _check_shape(self) -> "PlanningDecision":
        if self.kind == "book" and len(self.slots) != 1:
            raise ValueError("book needs exactly one slot")
        if self.kind == "propose" and not 1 <= len(self.slots) <= MAX_PROPOSED_SLOTS:
            raise ValueError(f"propose needs between 1 and {MAX_PROPOSED_SLOTS} slots")
        if self.kind in ("request_clarification", "cancel") and self.slots:
            raise ValueError(f"{self.kind} must not carry slots")
        if self.kind == "cancel" and not self.reason:
            raise ValueError("cancel needs a reason")
        for slot in self.slots:
            if (slot.start.tzinfo is None) or (slot.end.tzinfo is None):
                raise ValueError("slot times must carry a UTC offset")
            if slot.end <= slot.start:
                raise ValueError("slot must end after it starts")
        return self


def submit_decision_tool() -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": SUBMIT_DECISION,
            "description": (
                "Finish planning with one decision: book (one slot returned by "
                "check_schedule), propose (up to three such slots), request_clarification "
                "(when details are missing or no slot fits), or cancel (with a reason)."
            ),
            "parameters": PlanningDecision.model_json_schema(),
        },
    }
