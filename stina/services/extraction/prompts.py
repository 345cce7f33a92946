"""Prompt text for the extraction stage."""

import json

from stina.models.domain.extraction_domain import MeetingIntent
from stina.models.domain.meeting_request_domain import Communication

EXTRACTION_SYSTEM_PROMPT = """You are Email-Analyst.

Task: read the message below and extract the structured facts needed to
schedule a meeting. Produce ONLY valid JSON matching the schema provided.
Do not output explanations or prose.

Guidelines
- "initiator" = the person who first asked to meet (usually the Stina user).
  If unclear, assume the Stina user.
- "invitees" = everyone the initiator wants to meet (exclude Stina).
- Time phrases: capture as written ("next Tuesday afternoon"), no date maths.
- Location: capture any hints (preferred cafe, postcode, "virtual").
- duration_minutes is an integer or null.

Schema:
{schema}
"""


def build_system_prompt() -> str:
    schema = json.dumps(MeetingIntent.model_json_schema(), indent=2)
    return EXTRACTION_SYSTEM_PROMPT.replace("{schema}", schema)


def build_user_prompt(communication: Communication, known_user_email: str | None) -> str:
    lines = []
    if known_user_email:
        lines.append(f"Stina user: {known_user_email}")
    if communication.subject:
        lines.append(f"Subject: {communication.subject}")
    lines.append(f"From: {communication.sender}")
    lines.append(f"Date: {communication.timestamp.isoformat()}")
    lines.append(f"Channel: {communication.type.value}")
    lines.append("")
    lines.append(communication.content.strip())
    return "\n".join(lines)
