from abc import ABC, abstractmethod
import base64
import logging
import os
from typing import List, Optional, TypedDict

import httpx

from .templating import render

MAIL_API_URL = os.environ.get("MAIL_API_URL", "")
MAIL_API_KEY = os.environ.get("MAIL_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "EventHub <no-reply@eventhub.local>")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:3000")

logger = logging.getLogger(__name__)


class Attachment(TypedDict):
    filename: str
    content: bytes
    content_type: str


# ----------------------------
# Mailer Interface
# ----------------------------
class Mailer(ABC):
    @abstractmethod
    async def send_email(
            self, to: str, subject: str, html: str,
            attachments: Optional[List[Attachment]] = None,
    ) -> None: ...

    async def send_ticket_email(
            self, to: str, buyer_name: str, transaction, event,
            artifact: bytes,
    ) -> None:
        html = render(
            "email_ticket.html",
            buyer_name=buyer_name, transaction=transaction, event=event,
        )
        await self.send_email(
            to,
            f"Your Ticket for {event.name} - EventHub",
            html,
            attachments=[{
                "filename": f"EventHub-Ticket-{transaction.id}.svg",
                "content": artifact,
                "content_type": "image/svg+xml",
            }],
        )

    async def send_payment_confirmation_email(
            self, to: str, buyer_name: str, transaction_id: int,
            event_name: str,
    ) -> None:
        html = render(
            "email_payment_confirmed.html",
            buyer_name=buyer_name, transaction_id=transaction_id,
            event_name=event_name, base_url=PUBLIC_BASE_URL,
        )
        await self.send_email(to, f"Payment Confirmed - {event_name}", html)

    async def send_rejection_email(
            self, to: str, buyer_name: str, transaction_id: int,
            event_name: str, points_refunded: int = 0,
    ) -> None:
        html = render(
            "email_rejected.html",
            buyer_name=buyer_name, transaction_id=transaction_id,
            event_name=event_name, points_refunded=points_refunded,
        )
        await self.send_email(to, f"Payment Rejected - {event_name}", html)

    async def send_cancellation_email(
            self, to: str, buyer_name: str, transaction_id: int,
            event_name: str, points_refunded: int = 0,
            expired: bool = False,
    ) -> None:
        html = render(
            "email_canceled.html",
            buyer_name=buyer_name, transaction_id=transaction_id,
            event_name=event_name, points_refunded=points_refunded,
            expired=expired,
        )
        await self.send_email(
            to, f"Transaction Canceled - {event_name}", html
        )


# ----------------------------
# HTTP relay implementation
# ----------------------------
class HttpMailer(Mailer):
    """Posts each message as JSON to a mail relay (MAIL_API_URL)."""

    def __init__(self, client: httpx.AsyncClient,
                 url: str = MAIL_API_URL, api_key: str = MAIL_API_KEY,
                 sender: str = MAIL_FROM) -> None:
        self.client = client
        self.url = url
        self.api_key = api_key
        self.sender = sender

    async def send_email(self, to, subject, html, attachments=None) -> None:
        if not self.url:
            raise RuntimeError("MAIL_API_URL is not configured")
        body = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
            "attachments": [
                {
                    "filename": a["filename"],
                    "content_type": a["content_type"],
                    "content": base64.b64encode(a["content"]).decode(),
                }
                for a in (attachments or [])
            ],
        }
        headers = {}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"
        r = await self.client.post(self.url, json=body, headers=headers)
        r.raise_for_status()
        logger.info("email sent to=%s subject=%r", to, subject)


class LogMailer(Mailer):
    """Local runs without a relay: log instead of sending."""

    async def send_email(self, to, subject, html, attachments=None) -> None:
        logger.info("email (not sent) to=%s subject=%r attachments=%d",
                    to, subject, len(attachments or []))
