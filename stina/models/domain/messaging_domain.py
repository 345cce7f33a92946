# stina/models/domain/messaging_domain.py
"""
Inbound and outbound message models shared by the messaging adapter,
ingestion and the send_message tool.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class InboundMessage(BaseModel):
    """A message as received from a channel, before it becomes a Communication."""

    id: str
    channel: Literal["email", "text", "whatsapp", "chat"] = "email"
    sender: str
    sender_name: str | None = None
    subject: str | None = None
    body: str
    received_at: datetime
    thread_id: str | None = None
    recipients: list[str] = Field(default_factory=list)


class DeliveryReceipt(BaseModel):
    message_id: str
    status: Literal["sent", "queued"] = "sent"
    recipients: list[str]
    subject: str
    thread_id: str | None = None
    watching: bool = False
