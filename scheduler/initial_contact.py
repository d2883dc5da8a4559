"""
Initial contact flow.

Fires for opted-in leads that have never received an outbound message. The
check is against the message log (not a counter) and is repeated inside the
atomic claim.
"""

import logging
from typing import List, Optional

from database.models import AIStage, Lead
from database.repositories import LeadRepository, has_outbound_clause

from .dispatcher import DispatchResult
from .strategies import (
    EngagementStrategy, StrategyKind, StrategyResult, SweepContext, register_strategy,
)

logger = logging.getLogger(__name__)


@register_strategy(StrategyKind.INITIAL_CONTACT)
class InitialContactStrategy(EngagementStrategy):

    async def due(self, ctx: SweepContext) -> List[Lead]:
        async with self.services.database.session() as session:
            return await LeadRepository(session).list_initial_contact_due(ctx.now, self.services.lead_limit)

    async def handle(self, lead: Lead, ctx: SweepContext, result: StrategyResult) -> Optional[DispatchResult]:
        await self.claim(
            lead.id, ctx,
            Lead.ai_opt_in.is_(True),
            Lead.ai_stage == AIStage.UNCONTACTED.value,
            ~has_outbound_clause(),
        )
        final = {}
        try:
            generated = await self.generate(lead)
            sent = await self.services.dispatcher.dispatch(
                lead,
                generated.message,
                correlation_id=f"{lead.id}:{self.kind.value}:0",
                strategy=self.kind.value,
                now=ctx.now,
            )
            final = {
                "ai_stage": AIStage.INITIAL_SENT.value,
                "messages_sent_today": 1,
                "next_send_at": self.services.next_followup_at(ctx.now),
            }
            logger.info(f"Initial contact sent to lead {lead.id} ({generated.reasoning})")
            return sent
        finally:
            await self.release(lead.id, ctx, **final)
