"""
Outbound dispatch for the Lead Engagement Engine.

Every AI send goes through ``Dispatcher.dispatch``:
compliance gate -> frequency cap -> Message(pending) -> gateway -> sent | failed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError

from api.channels.base import ChannelMessage, ChannelResponse, MessagingGateway
from database.models import Lead
from database.repositories import LeadRepository, MessageRepository, PhoneNumberRepository
from database.session import Database

from .compliance import ComplianceGate
from .errors import DeliveryFailure, FrequencyCapReached, SchedulingNoOp, ValidationError

logger = logging.getLogger(__name__)

EventSink = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


@dataclass
class DispatchResult:
    message_id: str
    correlation_id: str
    to_number: str
    provider_id: Optional[str] = None
    status: str = "sent"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "correlation_id": self.correlation_id,
            "to_number": self.to_number,
            "provider_id": self.provider_id,
            "status": self.status,
        }


class Dispatcher:
    """Sends one message to one lead, persisting it before the gateway call."""

    def __init__(
        self,
        database: Database,
        gateway: MessagingGateway,
        gate: ComplianceGate,
        max_ai_messages_per_24h: int = 2,
        auto_suppress_after_failures: int = 3,
        timezone: str = "America/Chicago",
        event_sink: Optional[EventSink] = None,
    ):
        self.database = database
        self.gateway = gateway
        self.gate = gate
        self.max_ai_messages_per_24h = max_ai_messages_per_24h
        self.auto_suppress_after_failures = auto_suppress_after_failures
        self.tz = ZoneInfo(timezone)
        self.event_sink = event_sink

    async def resolve_number(self, lead_id: str) -> str:
        async with self.database.session() as session:
            phone = await PhoneNumberRepository(session).get_primary(lead_id)
        if phone is None:
            raise ValidationError("Lead has no active phone number", lead_id=lead_id)
        return phone.number

    async def check_frequency_cap(self, lead_id: str, now: datetime) -> int:
        """
        Raises:
            FrequencyCapReached: the lead already had the maximum AI sends in 24h
        """
        async with self.database.session() as session:
            recent = await MessageRepository(session).count_ai_outbound_since(
                lead_id, now - timedelta(hours=24)
            )
        if recent >= self.max_ai_messages_per_24h:
            raise FrequencyCapReached(
                f"{recent} AI messages in the last 24h (max {self.max_ai_messages_per_24h})",
                lead_id=lead_id,
            )
        return recent

    def _local_date(self, when: datetime):
        return when.replace(tzinfo=ZoneInfo("UTC")).astimezone(self.tz).date()

    async def dispatch(
        self,
        lead: Lead,
        body: str,
        correlation_id: str,
        strategy: str,
        now: Optional[datetime] = None,
        ai_generated: bool = True,
        template_id: Optional[str] = None,
    ) -> DispatchResult:
        """
        Send ``body`` to the lead's primary number.

        Raises:
            ValidationError: no phone number or empty body
            ComplianceBlocked: gate rejected the send (no Message row written)
            FrequencyCapReached: rolling 24h AI cap reached
            SchedulingNoOp: a message with this correlation id already exists
            DeliveryFailure: the gateway failed; the Message is marked failed
        """
        now = now or datetime.utcnow()
        if not body or not body.strip():
            raise ValidationError("Refusing to send an empty message", lead_id=lead.id)

        number = await self.resolve_number(lead.id)
        await self.gate.check(lead, number, now)
        if ai_generated:
            await self.check_frequency_cap(lead.id, now)

        try:
            async with self.database.session() as session:
                msg = await MessageRepository(session).create_outbound(
                    lead_id=lead.id,
                    body=body,
                    to_number=number,
                    correlation_id=correlation_id,
                    ai_generated=ai_generated,
                    strategy=strategy,
                    sent_at=now,
                )
                message_id = msg.id
        except IntegrityError as e:
            raise SchedulingNoOp(f"Message {correlation_id} already dispatched", lead_id=lead.id) from e

        try:
            response = await self.gateway.send(ChannelMessage(to=number, body=body, correlation_id=correlation_id))
        except Exception as e:
            logger.error(f"Gateway raised for {correlation_id}: {e}")
            response = ChannelResponse(success=False, status="error", error=str(e))

        if not response.success:
            await self._handle_failure(lead.id, message_id, number, response.error or "unknown gateway error")
            raise DeliveryFailure(
                f"Delivery to {number} failed: {response.error}", message_id=message_id, lead_id=lead.id
            )

        async with self.database.session() as session:
            await MessageRepository(session).mark_sent(message_id, response.provider_id)
            await PhoneNumberRepository(session).record_success(number)
            leads = LeadRepository(session)
            fresh = await leads.get_by_id(lead.id)
            same_day = (
                fresh is not None
                and fresh.last_ai_sent_at is not None
                and self._local_date(fresh.last_ai_sent_at) == self._local_date(now)
            )
            await leads.update(
                lead.id,
                messages_sent_today=(fresh.messages_sent_today + 1) if same_day else 1,
                messages_sent_total=(fresh.messages_sent_total if fresh else 0) + 1,
                last_ai_sent_at=now,
            )

        logger.info(f"Sent {strategy} message {message_id} to lead {lead.id}")

        if self.event_sink:
            await self.event_sink("message_sent", lead.id, {
                "message_id": message_id,
                "template_id": template_id or strategy,
                "strategy": strategy,
                "ai_generated": ai_generated,
                "sent_at": now.isoformat(),
            })

        return DispatchResult(
            message_id=message_id,
            correlation_id=correlation_id,
            to_number=number,
            provider_id=response.provider_id,
            status=response.status or "sent",
        )

    async def _handle_failure(self, lead_id: str, message_id: str, number: str, error: str) -> None:
        async with self.database.session() as session:
            await MessageRepository(session).mark_failed(message_id, error)
            phones = PhoneNumberRepository(session)
            failures = await phones.record_failure(number)
            if failures >= self.auto_suppress_after_failures:
                await phones.set_status(number, "failed")

        logger.warning(f"Delivery failed for lead {lead_id} ({failures} consecutive): {error}")
        if failures >= self.auto_suppress_after_failures:
            await self.gate.suppress(number, reason="auto_failed_delivery")
