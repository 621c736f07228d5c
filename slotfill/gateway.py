"""
Notification gateway — delivers waitlist offers to patients.

One interface, ``NotificationGateway``: hand it an ``OutboundMessage``, await
the delivery reference, or catch ``GatewayError``. SMS goes through Twilio,
email through an HTTP relay, portal messages into the patient's inbox.

HIPAA note: SMS is not inherently encrypted. Offer texts carry only the
provider, date and time; keep it that way unless the patient has consented
to more.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from twilio.rest import Client

from slotfill.config import settings
from slotfill.errors import GatewayError
from slotfill.models import NotificationMethod, new_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class OutboundMessage:
    method: NotificationMethod
    patient_id: str
    to: str
    body: str
    subject: str = ""


class NotificationGateway(Protocol):
    async def send(self, message: OutboundMessage) -> str:
        """Deliver ``message`` and return the transport's delivery reference."""


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------


class TwilioSmsGateway:
    def __init__(self, client: Optional[Client] = None, from_number: str = ""):
        self._client = client
        self.from_number = from_number or settings.twilio_phone_number

    def client(self) -> Client:
        if self._client is None:
            self._client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        return self._client

    async def send(self, message: OutboundMessage) -> str:
        if not message.to or not message.to.startswith("+"):
            logger.warning("Invalid phone number for SMS to patient %s", message.patient_id)
            raise GatewayError("Invalid phone number for SMS")
        try:
            # The Twilio SDK is blocking; keep it off the event loop.
            msg = await asyncio.to_thread(
                self.client().messages.create,
                to=message.to,
                from_=self.from_number,
                body=message.body,
            )
        except Exception as exc:
            logger.error("SMS failed for patient %s: %s", message.patient_id, exc)
            raise GatewayError(str(exc)) from exc
        logger.info("SMS sent to patient %s, SID %s", message.patient_id, msg.sid)
        return msg.sid


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


class EmailRelayGateway:
    """POSTs messages to an HTTP email relay (SendGrid, Postmark, an internal service)."""

    def __init__(self, url: str = "", token: str = "", timeout: float = 10.0):
        self.url = url or settings.email_relay_url
        self.token = token or settings.email_relay_token
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def send(self, message: OutboundMessage) -> str:
        if not self.url:
            raise GatewayError("Email relay not configured")
        if not message.to or "@" not in message.to:
            raise GatewayError("Invalid email address")
        payload = {"to": message.to, "subject": message.subject, "text": message.body}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=payload, headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Email relay failed for patient %s: %s", message.patient_id, exc)
            raise GatewayError(str(exc)) from exc

        reference = resp.headers.get("X-Message-Id")
        if not reference:
            try:
                reference = resp.json().get("id")
            except ValueError:
                reference = None
        return reference or new_id()


# ---------------------------------------------------------------------------
# Portal
# ---------------------------------------------------------------------------


class PortalInboxGateway:
    """Drops messages into the patient's portal inbox."""

    def __init__(self):
        self.inbox: dict[str, list[dict]] = {}

    async def send(self, message: OutboundMessage) -> str:
        reference = new_id()
        self.inbox.setdefault(message.patient_id, []).append({
            "id": reference,
            "subject": message.subject,
            "body": message.body,
            "delivered_at": utcnow().isoformat(),
        })
        return reference


class RoutingGateway:
    """Sends each message through the gateway registered for its method."""

    def __init__(self, routes: dict[NotificationMethod, NotificationGateway]):
        self.routes = routes

    async def send(self, message: OutboundMessage) -> str:
        gateway = self.routes.get(message.method)
        if gateway is None:
            raise GatewayError(f"No gateway configured for {message.method.value}")
        return await gateway.send(message)


def default_gateway() -> RoutingGateway:
    return RoutingGateway({
        NotificationMethod.SMS: TwilioSmsGateway(),
        NotificationMethod.EMAIL: EmailRelayGateway(),
        NotificationMethod.PORTAL: PortalInboxGateway(),
    })
