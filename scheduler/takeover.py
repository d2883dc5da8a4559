"""
AI takeover flow and inbound reply handling.

When a lead replies and AI takeover is enabled, the lead is flagged as
waiting on a human with a response deadline. If nobody answers before the
deadline, the AI sends a follow-up at once and the flag is cleared after
the send goes out.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from database.models import AIStage, Lead
from database.repositories import (
    LeadRepository, MessageRepository, PhoneNumberRepository, SuppressionRepository,
)

from .dispatcher import DispatchResult
from .errors import DeliveryFailure, EngagementError, GenerationFailure, ValidationError
from .strategies import (
    EngagementStrategy, EngineServices, StrategyKind, StrategyResult, SweepContext,
    register_strategy,
)

logger = logging.getLogger(__name__)
compliance_logger = logging.getLogger("compliance")

OPT_OUT_KEYWORDS = {"stop", "stopall", "unsubscribe", "cancel", "end", "quit"}


@register_strategy(StrategyKind.AI_TAKEOVER)
class AITakeoverStrategy(EngagementStrategy):

    async def due(self, ctx: SweepContext) -> List[Lead]:
        async with self.services.database.session() as session:
            return await LeadRepository(session).list_takeover_due(ctx.now, self.services.lead_limit)

    async def handle(self, lead: Lead, ctx: SweepContext, result: StrategyResult) -> Optional[DispatchResult]:
        deadline = lead.response_deadline
        await self.claim(
            lead.id, ctx,
            Lead.pending_human_response.is_(True),
            Lead.response_deadline <= ctx.now,
        )
        # The flag stays armed on a retryable failure so the next sweep takes over again
        final = {}
        try:
            generated = await self.generate(lead)
            marker = deadline.strftime("%Y%m%dT%H%M%S") if deadline else "now"
            sent = await self.services.dispatcher.dispatch(
                lead,
                generated.message,
                correlation_id=f"{lead.id}:{self.kind.value}:{marker}",
                strategy=self.kind.value,
                now=ctx.now,
            )
            final = self._disarm(next_send_at=self.services.next_followup_at(ctx.now))
            logger.info(f"AI takeover executed for lead {lead.id} (deadline {deadline})")
            return sent
        except (GenerationFailure, DeliveryFailure):
            raise
        except EngagementError:
            final = self._disarm(next_send_at=ctx.now)
            raise
        finally:
            await self.release(lead.id, ctx, **final)

    @staticmethod
    def _disarm(**values) -> dict:
        return dict(
            pending_human_response=False,
            response_deadline=None,
            ai_stage=AIStage.TAKEOVER_EXECUTED.value,
            **values,
        )


async def record_inbound(
    services: EngineServices,
    lead_id: str,
    body: str,
    now: Optional[datetime] = None,
    from_number: Optional[str] = None,
) -> dict:
    """
    Record a customer reply.

    Appends the inbound message, marks the lead engaged and, if AI takeover is
    enabled for the lead, arms the human-response deadline. Opt-out keywords
    suppress the number instead.

    Raises:
        ValidationError: unknown lead or empty body
    """
    now = now or datetime.utcnow()
    if not body or not body.strip():
        raise ValidationError("Inbound message body is empty", lead_id=lead_id)

    opted_out = body.strip().lower() in OPT_OUT_KEYWORDS
    async with services.database.session() as session:
        leads = LeadRepository(session)
        lead = await leads.get_by_id(lead_id)
        if lead is None:
            raise ValidationError(f"Lead {lead_id} not found", lead_id=lead_id)

        message = await MessageRepository(session).add_inbound(lead_id, body, sent_at=now)
        values = {}
        if lead.ai_stage != AIStage.AGGRESSIVE_UNRESPONSIVE.value:
            values["ai_stage"] = AIStage.ENGAGED.value

        if opted_out:
            phones = PhoneNumberRepository(session)
            number = from_number
            if number is None:
                phone = await phones.get_primary(lead_id)
                number = phone.number if phone else None
            if number:
                await SuppressionRepository(session).add(number, reason="opt_out")
                await phones.set_status(number, "opted_out")
                compliance_logger.warning(f"OPT-OUT lead={lead_id} number={number}")
            values.update(ai_opt_in=False, pending_human_response=False, response_deadline=None)
        elif lead.ai_takeover_enabled:
            delay = lead.ai_takeover_delay_minutes or services.ai_takeover_delay_minutes
            values.update(pending_human_response=True, response_deadline=now + timedelta(minutes=delay))

        await leads.update(lead_id, **values)
        message_id = message.id

    if services.event_sink:
        await services.event_sink("response_received", lead_id, {
            "message_id": message_id,
            "body": body,
            "received_at": now.isoformat(),
        })

    logger.info(f"Inbound reply recorded for lead {lead_id}" + (" (opt-out)" if opted_out else ""))
    return {
        "message_id": message_id,
        "opted_out": opted_out,
        "pending_human_response": values.get("pending_human_response", False),
        "response_deadline": values.get("response_deadline"),
    }
