"""
Delivery Provider

Transport for email, SMS and WhatsApp messages. The engine only depends
on the DeliveryProvider protocol; HttpDeliveryGateway talks to a
JSON messaging gateway over HTTP.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...config import HTTP_RETRY_ATTEMPTS
from ...errors import ExternalProviderUnavailable
from ...models.db_models import DeliveryChannel

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReceipt:
    """Provider acknowledgment of one outbound message."""
    channel: DeliveryChannel
    message_id: Optional[str]


class DeliveryProvider(Protocol):
    """Outbound messaging."""

    def send_email(self, to: str, subject: str, body: str) -> DeliveryReceipt: ...

    def send_sms(self, to: str, body: str) -> DeliveryReceipt: ...

    def send_whatsapp(self, to: str, body: str) -> DeliveryReceipt: ...


def mask_phone(phone: Optional[str]) -> str:
    """****1234"""
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    return f"****{digits[-4:]}" if digits else "****"


class HttpDeliveryGateway:
    """
    Messaging gateway client.

    POST {base_url}/messages with {channel, to, subject?, body};
    the gateway answers {"id": "..."}.
    """

    def __init__(self, http_client: httpx.Client, base_url: str, api_token: str = "", retry_attempts: int = HTTP_RETRY_ATTEMPTS):
        self.http = http_client
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.retry_attempts = max(1, retry_attempts)

    def send_email(self, to: str, subject: str, body: str) -> DeliveryReceipt:
        return self._send(DeliveryChannel.EMAIL, to, body, subject=subject)

    def send_sms(self, to: str, body: str) -> DeliveryReceipt:
        return self._send(DeliveryChannel.SMS, to, body)

    def send_whatsapp(self, to: str, body: str) -> DeliveryReceipt:
        return self._send(DeliveryChannel.WHATSAPP, to, body)

    def _send(self, channel: DeliveryChannel, to: str, body: str, subject: Optional[str] = None) -> DeliveryReceipt:
        if not self.base_url:
            raise ExternalProviderUnavailable(channel.value, "Delivery gateway is not configured")

        payload = {"channel": channel.value, "to": to, "body": body}
        if subject:
            payload["subject"] = subject

        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=0.5, max=4),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = self.http.post(
                        f"{self.base_url}/messages",
                        json=payload,
                        headers={"Authorization": f"Bearer {self.api_token}"} if self.api_token else None,
                    )
                    response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Delivery via {channel.value} failed: {e}")
            raise ExternalProviderUnavailable(channel.value, f"Delivery via {channel.value} failed")

        data = response.json() if response.content else {}
        return DeliveryReceipt(channel=channel, message_id=data.get("id"))
