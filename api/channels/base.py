"""
Messaging gateway contract for the Lead Engagement Engine.

Base class for outbound SMS integrations. Gateways never raise on a failed
send; they return ``ChannelResponse(success=False, error=...)`` and the
dispatcher turns that into a DeliveryFailure.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class ChannelMessage:
    """Message to send via a gateway."""
    to: str  # E.164 phone number
    body: str
    correlation_id: str  # idempotency key, echoed back in delivery callbacks


@dataclass
class ChannelResponse:
    """Response from a gateway send operation."""
    success: bool
    provider_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class MessagingGateway(ABC):
    """Abstract base class for messaging gateways."""

    @abstractmethod
    async def send(self, message: ChannelMessage) -> ChannelResponse:
        """Send a text message."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the gateway is operational."""
        ...


class LoggingGateway(MessagingGateway):
    """Gateway used when no SMS provider is configured: logs and accepts every send."""

    async def send(self, message: ChannelMessage) -> ChannelResponse:
        logger.info(f"[dry-run] SMS to {message.to} ({message.correlation_id}): {message.body[:80]}")
        return ChannelResponse(success=True, provider_id=f"dry-{message.correlation_id}", status="accepted")

    async def health_check(self) -> bool:
        return True
