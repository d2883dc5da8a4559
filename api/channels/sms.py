"""
SMS gateway for the Lead Engagement Engine.

Sends through the Twilio Messages REST API with httpx. The correlation id is
appended to the status-callback URL so delivery receipts can be matched back
to the Message row.
"""

import logging
from typing import Optional

import httpx

from .base import ChannelMessage, ChannelResponse, MessagingGateway

logger = logging.getLogger(__name__)


class TwilioSMSGateway(MessagingGateway):
    """SMS via Twilio Programmable Messaging."""

    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.status_callback_url = status_callback_url
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def send(self, message: ChannelMessage) -> ChannelResponse:
        url = f"{self.BASE_URL}/Accounts/{self.account_sid}/Messages.json"
        payload = {"To": message.to, "From": self.from_number, "Body": message.body}
        if self.status_callback_url:
            sep = "&" if "?" in self.status_callback_url else "?"
            payload["StatusCallback"] = f"{self.status_callback_url}{sep}correlation_id={message.correlation_id}"

        try:
            async with self._client() as client:
                resp = await client.post(url, data=payload)
                data = resp.json()
                if resp.status_code >= 400:
                    error = data.get("message") or f"HTTP {resp.status_code}"
                    logger.error(f"Twilio rejected SMS to {message.to}: {error}")
                    return ChannelResponse(success=False, status="rejected", error=error)
                return ChannelResponse(
                    success=True,
                    provider_id=data.get("sid"),
                    status=data.get("status", "queued"),
                )
        except Exception as e:
            logger.error(f"Twilio send failed: {e}")
            return ChannelResponse(success=False, status="error", error=str(e))

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                resp = await client.get(f"{self.BASE_URL}/Accounts/{self.account_sid}.json")
                return resp.status_code == 200
        except Exception:
            return False
