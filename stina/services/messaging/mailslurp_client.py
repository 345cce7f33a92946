"""
MailSlurp REST adapter: the assistant's inbox.

Outbound mail goes out from the configured inbox; a `thread_id` is the
MailSlurp id of the email being answered, in which case the message is sent
as a reply to it. Inbound polling returns unread emails oldest first;
fetching a full email marks it read on the MailSlurp side.
"""

from typing import Protocol

from stina.errors import ProviderError
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.calendar_domain import parse_iso_datetime
from stina.models.domain.messaging_domain import DeliveryReceipt, InboundMessage
from stina.services.provider_http import ProviderHttpClient

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20


class MessagingProvider(Protocol):
    async def send(
        self, recipients: list[str], subject: str, body: str, thread_id: str | None = None
    ) -> DeliveryReceipt: ...

    async def list_unprocessed(self) -> list[InboundMessage]: ...


class MailSlurpClient(ProviderHttpClient):
    provider_name = "MailSlurp"

    def __init__(self, api_key: str | None, inbox_id: str | None, base_url: str, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.inbox_id = inbox_id
        self.base_url = base_url.rstrip("/")

    def _get_headers(self) -> dict:
        if not self.api_key or not self.inbox_id:
            raise ProviderError("MailSlurp inbox is not configured", kind="unavailable")
        return {"x-api-key": self.api_key, "Accept": "application/json"}

    async def send(
        self, recipients: list[str], subject: str, body: str, thread_id: str | None = None
    ) -> DeliveryReceipt:
        headers = self._get_headers()

        if thread_id:
            url = f"{self.base_url}/emails/{thread_id}"
            payload = {"body": body, "isHTML": False}
            method = "PUT"
        else:
            url = f"{self.base_url}/inboxes/{self.inbox_id}/confirm"
            payload = {"to": recipients, "subject": subject, "body": body, "isHTML": False}
            method = "POST"

        logger.info(
            "Sending email",
            recipient_count=len(recipients),
            is_reply=bool(thread_id),
        )

        response = await self._request_with_retry(
            method, url, idempotent=False, headers=headers, json=payload
        )
        data = self._handle_api_response(response, "send_email")

        message_id = data.get("id")
        if not message_id:
            raise ProviderError("MailSlurp accepted the email but returned no id")

        logger.info("Email sent", message_id=message_id)
        return DeliveryReceipt(
            message_id=message_id,
            recipients=recipients,
            subject=subject,
            thread_id=thread_id or message_id,
        )

    async def list_unprocessed(self) -> list[InboundMessage]:
        """Unread inbox emails, oldest first."""
        headers = self._get_headers()
        params = {
            "inboxId": self.inbox_id,
            "unreadOnly": "true",
            "sort": "ASC",
            "size": DEFAULT_PAGE_SIZE,
        }

        response = await self._request_with_retry(
            "GET", f"{self.base_url}/emails", headers=headers, params=params
        )
        page = self._handle_api_response(response, "list_emails")

        messages = []
        for preview in page.get("content", []):
            response = await self._request_with_retry(
                "GET", f"{self.base_url}/emails/{preview['id']}", headers=headers
            )
            email = self._handle_api_response(response, "get_email")
            messages.append(self._to_inbound(email))

        messages.sort(key=lambda m: m.received_at)
        logger.info("Inbox polled", unread_count=len(messages))
        return messages

    def _to_inbound(self, email: dict) -> InboundMessage:
        sender = email.get("from") or ""
        sender_name = None
        # "Sam Lee <sam@example.com>"
        if "<" in sender and sender.endswith(">"):
            sender_name = sender.split("<", 1)[0].strip().strip('"') or None
            sender = sender.split("<", 1)[1].rstrip(">").strip()

        return InboundMessage(
            id=email["id"],
            channel="email",
            sender=sender,
            sender_name=sender_name,
            subject=email.get("subject"),
            body=email.get("body") or "",
            received_at=parse_iso_datetime(email["createdAt"]),
            thread_id=email.get("threadId"),
            recipients=email.get("to") or [],
        )
