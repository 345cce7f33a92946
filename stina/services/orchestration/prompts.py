"""Planning prompt and context for the orchestrator."""

import json
from datetime import datetime
from typing import Any

from stina.models.domain.meeting_request_domain import MeetingRequest
from stina.models.domain.preferences_domain import UserPreferences

PLANNER_SYSTEM_PROMPT = """You are "Stina", an executive assistant that turns meeting requests into
confirmed meetings on behalf of the user.

Workflow
1. Understand the ask from the extracted intent and the new messages.
2. Call check_schedule to find candidate slots that respect the user's
   preferences. Only slots returned by check_schedule may be proposed or booked.
3. For in-person meetings with no fixed location, call find_venues.
4. When slots are available, email the participants with no more than three
   options (send_message), then submit_decision with kind "propose".
5. When a participant has confirmed one of the offered slots, submit_decision
   with kind "book" and that slot.
6. When no slot fits, or key details are missing, ask for clarification by
   email and submit_decision with kind "request_clarification".
7. Use update_request_status to record progress notes as you go.

Rules
- Never invent tools, parameters, contacts or times.
- Never expose raw JSON or internal reasoning to recipients.
- Show times with an explicit timezone.
- End every plan with exactly one submit_decision call.
"""


def _communication_lines(request: MeetingRequest) -> list[str]:
    lines = []
    for communication in request.unprocessed_communications():
        header = f"[{communication.timestamp.isoformat()}] {communication.type.value} from {communication.sender}"
        if communication.thread_id:
            header += f" (thread_id={communication.thread_id})"
        if communication.subject:
            header += f" - {communication.subject}"
        lines.append(header)
        lines.append(communication.content.strip())
        lines.append("")
    return lines


def build_planning_context(
    request: MeetingRequest, preferences: UserPreferences, now: datetime
) -> str:
    sections = [
        f"Current time: {now.isoformat()}",
        f"Meeting request id: {request.id}",
        f"Status: {request.status.value}",
        f"Summary: {request.context.summary or 'None yet'}",
        "",
        "Participants:",
    ]
    for participant in request.participants:
        sections.append(f"- {participant.name or 'Unknown'} <{participant.email}>")

    sections.append("")
    sections.append("Extracted intent:")
    if request.has_successful_extraction():
        sections.extend(request.extraction_result.intent.to_context_lines())
    else:
        sections.append("None; work from the messages below.")

    if request.proposed_times:
        sections.append("")
        sections.append("Previously proposed times:")
        for proposed in request.proposed_times:
            sections.append(f"- {proposed.start.isoformat()} to {proposed.end.isoformat()} ({proposed.timezone})")

    sections.append("")
    sections.append("User preferences:")
    sections.extend(preferences.to_context_lines())

    sections.append("")
    sections.append("New messages (oldest first):")
    sections.extend(_communication_lines(request) or ["None"])

    return "\n".join(sections)


def initial_messages(
    request: MeetingRequest, preferences: UserPreferences, now: datetime
) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": build_planning_context(request, preferences, now)},
    ]


def tool_message(call_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"role": "tool", "tool_call_id": call_id, "content": json.dumps(payload, default=str)}
