"""
Aggressive multi-day sequence for unresponsive leads.

Entering the sequence materializes the whole 14-day plan as schedule rows.
Each sweep sends the due rows, unless the lead replied in the last 24 hours,
in which case the lead is paused and its remaining rows are skipped.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from database.models import AIStage, AggressiveScheduleEntry, Lead
from database.repositories import LeadRepository, MessageRepository, ScheduleRepository
from database.session import Database

from .dispatcher import DispatchResult
from .errors import ComplianceBlocked, FrequencyCapReached, SchedulingNoOp, ValidationError
from .strategies import (
    EngagementStrategy, StrategyKind, StrategyResult, SweepContext, register_strategy,
)

logger = logging.getLogger(__name__)

PAUSE_REASON_RESPONDED = "responded_during_aggressive"
REPLY_LOOKBACK_HOURS = 24


class SequenceStrategy(Enum):
    FEATURES_BENEFITS = "features_benefits"
    URGENCY_SCARCITY = "urgency_scarcity"
    INCENTIVES_DEALS = "incentives_deals"
    FINAL_PUSH = "final_push"
    GENTLE_FOLLOWUP = "gentle_followup"


@dataclass(frozen=True)
class SequenceDay:
    day: int
    send_times: Tuple[time, ...]
    strategy: SequenceStrategy


_WEEK_ONE = (time(9, 0), time(13, 0), time(17, 0))
_WEEK_TWO = (time(10, 0), time(16, 0))


def _strategy_for_day(day: int) -> SequenceStrategy:
    if day <= 3:
        return SequenceStrategy.FEATURES_BENEFITS
    if day <= 6:
        return SequenceStrategy.URGENCY_SCARCITY
    if day <= 9:
        return SequenceStrategy.INCENTIVES_DEALS
    if day <= 12:
        return SequenceStrategy.FINAL_PUSH
    return SequenceStrategy.GENTLE_FOLLOWUP


SEQUENCE_PLAN: List[SequenceDay] = [
    SequenceDay(day, _WEEK_ONE if day <= 7 else _WEEK_TWO, _strategy_for_day(day))
    for day in range(1, 15)
]

SEQUENCE_TEMPLATES: Dict[SequenceStrategy, List[str]] = {
    SequenceStrategy.FEATURES_BENEFITS: [
        "Hi {first_name}! The {vehicle} has some great features: heated seats, a backup camera and plenty of room. What questions can I answer?",
        "Hey {first_name}! The {vehicle} gets great gas mileage and has excellent safety ratings. Would you like to know more about the warranty options?",
        "{first_name}, the {vehicle} comes with a comfortable interior and all-wheel drive options for any weather. When would be a good time to take a look?",
    ],
    SequenceStrategy.URGENCY_SCARCITY: [
        "Hi {first_name}! We've had a few people ask about the {vehicle} this week. These don't last long. Want to set up a quick visit?",
        "{first_name}, the {vehicle} is priced to move. Interested in seeing it today?",
        "Hey {first_name}! Only a few {vehicle} models left on the lot. Can we schedule a quick test drive?",
    ],
    SequenceStrategy.INCENTIVES_DEALS: [
        "Hi {first_name}! We have special financing available on the {vehicle} this week for qualified buyers. Want the details?",
        "{first_name}, we can work with your budget on the {vehicle}. Trade-ins welcome and we handle the paperwork. What's your timeline?",
        "Hey {first_name}! There are end-of-month offers on the {vehicle} if you come in this week. Interested?",
    ],
    SequenceStrategy.FINAL_PUSH: [
        "Hi {first_name}! Checking one more time on the {vehicle}. Can you stop by today?",
        "{first_name}, we can have everything ready for a quick purchase on the {vehicle}. Available this evening?",
        "Hey {first_name}! Final call on the {vehicle}. Want me to hold it for you?",
    ],
    SequenceStrategy.GENTLE_FOLLOWUP: [
        "Hi {first_name}, hope you found what you were looking for! If you're still interested in the {vehicle}, we're here to help.",
        "{first_name}, just checking in. Did you end up finding a vehicle elsewhere? The {vehicle} is still available if you change your mind.",
    ],
}


@dataclass
class PlannedEntry:
    day: int
    message_index: int
    scheduled_at: datetime  # naive UTC
    strategy: SequenceStrategy


def render_sequence_message(strategy: SequenceStrategy, message_index: int, first_name: Optional[str],
                            vehicle: Optional[str]) -> str:
    bank = SEQUENCE_TEMPLATES[strategy]
    return bank[message_index % len(bank)].format(
        first_name=first_name or "there",
        vehicle=vehicle or "vehicle",
    )


def build_plan(start: datetime, timezone: str = "America/Chicago") -> List[PlannedEntry]:
    """
    Materialize the 14-day plan starting from ``start`` (naive UTC).

    Send times are dealership-local wall-clock times, converted to UTC per
    date so daylight-saving changes inside the plan are honoured. Day 1 is
    the start's local date when its first slot is still ahead, else the next
    local date.
    """
    tz = ZoneInfo(timezone)
    utc = ZoneInfo("UTC")
    local_start = start.replace(tzinfo=utc).astimezone(tz)

    first_date: date = local_start.date()
    first_slot = datetime.combine(first_date, SEQUENCE_PLAN[0].send_times[0], tzinfo=tz)
    if first_slot <= local_start:
        first_date += timedelta(days=1)

    entries: List[PlannedEntry] = []
    for plan_day in SEQUENCE_PLAN:
        day_date = first_date + timedelta(days=plan_day.day - 1)
        for index, send_time in enumerate(plan_day.send_times):
            local = datetime.combine(day_date, send_time, tzinfo=tz)
            entries.append(PlannedEntry(
                day=plan_day.day,
                message_index=index,
                scheduled_at=local.astimezone(utc).replace(tzinfo=None),
                strategy=plan_day.strategy,
            ))
    return entries


class SequenceManager:
    """Entering, pausing and resuming the aggressive sequence."""

    def __init__(self, database: Database, timezone: str = "America/Chicago"):
        self.database = database
        self.timezone = timezone

    async def start_sequence(self, lead_id: str, now: Optional[datetime] = None) -> List[AggressiveScheduleEntry]:
        """
        Put a lead into the aggressive sequence, replacing any unsent plan.

        Raises:
            ValidationError: unknown lead
        """
        now = now or datetime.utcnow()
        plan = build_plan(now, self.timezone)

        async with self.database.session() as session:
            leads = LeadRepository(session)
            if await leads.get_by_id(lead_id) is None:
                raise ValidationError(f"Lead {lead_id} not found", lead_id=lead_id)

            schedule = ScheduleRepository(session)
            cleared = await schedule.clear_unsent(lead_id)
            entries = [
                AggressiveScheduleEntry(
                    lead_id=lead_id,
                    day=p.day,
                    message_index=p.message_index,
                    scheduled_at=p.scheduled_at,
                    strategy_tag=p.strategy.value,
                )
                for p in plan
            ]
            await schedule.bulk_create(entries)
            await leads.update(
                lead_id,
                ai_stage=AIStage.AGGRESSIVE_UNRESPONSIVE.value,
                sequence_paused=False,
                pause_reason=None,
                next_send_at=plan[0].scheduled_at,
            )

        logger.info(f"Aggressive sequence started for lead {lead_id}: {len(entries)} messages ({cleared} replaced)")
        return entries

    async def pause_sequence(self, lead_id: str, reason: str = "manual", skip_remaining: bool = False) -> bool:
        async with self.database.session() as session:
            leads = LeadRepository(session)
            if await leads.get_by_id(lead_id) is None:
                return False
            await leads.update(
                lead_id,
                sequence_paused=True,
                pause_reason=reason,
                ai_stage=AIStage.SEQUENCE_PAUSED.value,
            )
            if skip_remaining:
                await ScheduleRepository(session).skip_remaining(lead_id, reason)
        logger.info(f"Aggressive sequence paused for lead {lead_id} ({reason})")
        return True

    async def resume_sequence(self, lead_id: str, now: Optional[datetime] = None) -> int:
        """
        Unpause a lead. Entries whose time passed while paused are skipped.

        Returns:
            Number of entries still scheduled
        """
        now = now or datetime.utcnow()
        async with self.database.session() as session:
            leads = LeadRepository(session)
            if await leads.get_by_id(lead_id) is None:
                raise ValidationError(f"Lead {lead_id} not found", lead_id=lead_id)
            schedule = ScheduleRepository(session)
            remaining = 0
            next_at: Optional[datetime] = None
            for entry in await schedule.list_for_lead(lead_id):
                if entry.sent or entry.skip_reason:
                    continue
                if entry.scheduled_at < now:
                    await schedule.skip(entry.id, "expired_while_paused")
                    continue
                remaining += 1
                next_at = next_at or entry.scheduled_at
            await leads.update(
                lead_id,
                sequence_paused=False,
                pause_reason=None,
                ai_stage=AIStage.AGGRESSIVE_UNRESPONSIVE.value,
                next_send_at=next_at,
            )
        logger.info(f"Aggressive sequence resumed for lead {lead_id}: {remaining} remaining")
        return remaining


@register_strategy(StrategyKind.AGGRESSIVE_SEQUENCE)
class AggressiveSequenceStrategy(EngagementStrategy):

    DUE_LIMIT = 50

    async def due(self, ctx: SweepContext) -> List[AggressiveScheduleEntry]:
        async with self.services.database.session() as session:
            return await ScheduleRepository(session).get_due(ctx.now, self.DUE_LIMIT)

    async def handle(
        self, entry: AggressiveScheduleEntry, ctx: SweepContext, result: StrategyResult
    ) -> Optional[DispatchResult]:
        async with self.services.database.session() as session:
            claimed = await ScheduleRepository(session).claim_entry(
                entry.id, ctx.sweep_id, ctx.now, self.services.claim_ttl_seconds
            )
        if not claimed:
            raise SchedulingNoOp("Entry already claimed, sent or paused", lead_id=entry.lead_id)

        try:
            if await self._replied_recently(entry.lead_id, ctx.now):
                await self._pause_for_reply(entry, ctx)
                result.paused += 1
                return None
            return await self._send(entry, ctx)
        finally:
            async with self.services.database.session() as session:
                await ScheduleRepository(session).release_entry(entry.id, ctx.sweep_id)

    async def _replied_recently(self, lead_id: str, now: datetime) -> bool:
        async with self.services.database.session() as session:
            inbound = await MessageRepository(session).last_inbound_since(
                lead_id, now - timedelta(hours=REPLY_LOOKBACK_HOURS)
            )
        return inbound is not None

    async def _pause_for_reply(self, entry: AggressiveScheduleEntry, ctx: SweepContext) -> None:
        async with self.services.database.session() as session:
            await LeadRepository(session).update(
                entry.lead_id,
                sequence_paused=True,
                pause_reason=PAUSE_REASON_RESPONDED,
                ai_stage=AIStage.SEQUENCE_PAUSED.value,
            )
            skipped = await ScheduleRepository(session).skip_remaining(entry.lead_id, "lead_responded")
        logger.info(f"Lead {entry.lead_id} replied, aggressive sequence paused ({skipped} entries skipped)")

    async def _send(self, entry: AggressiveScheduleEntry, ctx: SweepContext) -> DispatchResult:
        await self.claim(
            entry.lead_id, ctx,
            Lead.sequence_paused.is_(False),
            Lead.pending_human_response.is_(False),
        )
        try:
            async with self.services.database.session() as session:
                lead = await LeadRepository(session).get_by_id(entry.lead_id)

            strategy = SequenceStrategy(entry.strategy_tag)
            body = render_sequence_message(strategy, entry.message_index, lead.first_name, lead.vehicle_interest)
            try:
                sent = await self.services.dispatcher.dispatch(
                    lead,
                    body,
                    correlation_id=f"{lead.id}:{self.kind.value}:{entry.id}",
                    strategy=self.kind.value,
                    now=ctx.now,
                    template_id=f"{strategy.value}:{entry.message_index % len(SEQUENCE_TEMPLATES[strategy])}",
                )
            except FrequencyCapReached:
                await self._skip(entry.id, "frequency_cap")
                raise
            except ComplianceBlocked as e:
                await self._skip(entry.id, f"blocked:{e.reason}")
                raise

            async with self.services.database.session() as session:
                await ScheduleRepository(session).mark_sent(entry.id, sent.message_id, ctx.now)
            logger.info(f"Aggressive day {entry.day} #{entry.message_index} ({strategy.value}) sent to lead {lead.id}")
            return sent
        finally:
            await self.release(entry.lead_id, ctx)

    async def _skip(self, entry_id: str, reason: str) -> None:
        async with self.services.database.session() as session:
            await ScheduleRepository(session).skip(entry_id, reason)
