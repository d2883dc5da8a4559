"""
Repository classes for the Lead Engagement Engine data access layer.

Each repository encapsulates the queries for a specific aggregate.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, func, delete, update, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AIStage, Direction, DeliveryStatus,
    Lead, PhoneNumber, Message, AggressiveScheduleEntry, BehavioralTrigger,
    SuppressedNumber, MessageAnalytics, CommunicationPattern, LearningOutcome,
    OptimizationInsight,
)

logger = logging.getLogger(__name__)


def _claim_free(now: datetime):
    return or_(Lead.claimed_by.is_(None), Lead.claimed_until < now)


def _entry_claim_free(now: datetime):
    return or_(AggressiveScheduleEntry.claimed_by.is_(None), AggressiveScheduleEntry.claimed_until < now)


def has_outbound_clause():
    """Correlated EXISTS: the lead already has a pending or sent outbound message."""
    return (
        select(Message.id)
        .where(
            Message.lead_id == Lead.id,
            Message.direction == Direction.OUT.value,
            Message.delivery_status != DeliveryStatus.FAILED.value,
        )
        .exists()
    )


class LeadRepository:
    """Data access for leads, including the atomic sweep claim."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, phone: Optional[str] = None, **kwargs) -> Lead:
        lead = Lead(**kwargs)
        self.session.add(lead)
        await self.session.flush()
        if phone:
            self.session.add(PhoneNumber(lead_id=lead.id, number=phone, is_primary=True))
            await self.session.flush()
        return lead

    async def get_by_id(self, lead_id: str) -> Optional[Lead]:
        result = await self.session.execute(
            select(Lead).where(Lead.id == lead_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update(self, lead_id: str, **kwargs) -> None:
        await self.session.execute(
            update(Lead)
            .where(Lead.id == lead_id)
            .values(updated_at=datetime.utcnow(), **kwargs)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    async def list_active(self, limit: int = 100) -> List[Lead]:
        result = await self.session.execute(
            select(Lead).where(Lead.ai_opt_in.is_(True)).order_by(Lead.created_at.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def list_initial_contact_due(self, now: datetime, limit: int = 50) -> List[Lead]:
        result = await self.session.execute(
            select(Lead)
            .where(
                Lead.ai_opt_in.is_(True),
                Lead.ai_stage == AIStage.UNCONTACTED.value,
                Lead.pending_human_response.is_(False),
                _claim_free(now),
                ~has_outbound_clause(),
            )
            .order_by(Lead.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_advancement_candidates(self, now: datetime, limit: int = 50) -> List[Lead]:
        stages = [
            AIStage.INITIAL_SENT.value,
            AIStage.ENGAGED.value,
            AIStage.SEQUENCE_PAUSED.value,
            AIStage.TAKEOVER_EXECUTED.value,
        ]
        result = await self.session.execute(
            select(Lead)
            .where(
                Lead.ai_opt_in.is_(True),
                Lead.ai_stage.in_(stages),
                Lead.pending_human_response.is_(False),
                or_(Lead.next_send_at.is_(None), Lead.next_send_at <= now),
                _claim_free(now),
            )
            .order_by(Lead.next_send_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_takeover_due(self, now: datetime, limit: int = 50) -> List[Lead]:
        result = await self.session.execute(
            select(Lead)
            .where(
                Lead.pending_human_response.is_(True),
                Lead.response_deadline.is_not(None),
                Lead.response_deadline <= now,
            )
            .order_by(Lead.response_deadline.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(
        self,
        lead_id: str,
        sweep_id: str,
        now: datetime,
        ttl_seconds: int,
        *conditions: Any,
        **values: Any,
    ) -> bool:
        """
        Claim a lead for one sweep with a single conditional UPDATE.

        The WHERE clause re-checks due-ness (``conditions``) together with the
        claim being free, so of several overlapping sweeps exactly one gets
        rowcount 1. ``values`` are applied in the same statement.

        Returns:
            True if this sweep won the claim
        """
        result = await self.session.execute(
            update(Lead)
            .where(Lead.id == lead_id, _claim_free(now), *conditions)
            .values(
                claimed_by=sweep_id,
                claimed_until=now + timedelta(seconds=ttl_seconds),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1

    async def release(self, lead_id: str, sweep_id: str, **values: Any) -> None:
        """Release a claim held by ``sweep_id``, applying final state updates."""
        await self.session.execute(
            update(Lead)
            .where(Lead.id == lead_id, Lead.claimed_by == sweep_id)
            .values(claimed_by=None, claimed_until=None, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()


class PhoneNumberRepository:
    """Data access for lead phone numbers and delivery failure counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, lead_id: str, number: str, is_primary: bool = False) -> PhoneNumber:
        phone = PhoneNumber(lead_id=lead_id, number=number, is_primary=is_primary)
        self.session.add(phone)
        await self.session.flush()
        return phone

    async def get_primary(self, lead_id: str) -> Optional[PhoneNumber]:
        """Primary active number, else the oldest active one."""
        result = await self.session.execute(
            select(PhoneNumber)
            .where(PhoneNumber.lead_id == lead_id, PhoneNumber.status == "active")
            .order_by(PhoneNumber.is_primary.desc(), PhoneNumber.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def record_failure(self, number: str) -> int:
        """Increment failed attempts for a number. Returns the new maximum count."""
        await self.session.execute(
            update(PhoneNumber)
            .where(PhoneNumber.number == number)
            .values(
                failed_attempts=PhoneNumber.failed_attempts + 1,
                last_attempt_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            select(func.max(PhoneNumber.failed_attempts)).where(PhoneNumber.number == number)
        )
        return result.scalar() or 0

    async def record_success(self, number: str) -> None:
        await self.session.execute(
            update(PhoneNumber)
            .where(PhoneNumber.number == number)
            .values(failed_attempts=0, last_attempt_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    async def set_status(self, number: str, status: str) -> None:
        await self.session.execute(
            update(PhoneNumber)
            .where(PhoneNumber.number == number)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )


class MessageRepository:
    """Data access for the append-only message log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_inbound(self, lead_id: str, body: str, sent_at: Optional[datetime] = None) -> Message:
        msg = Message(
            lead_id=lead_id,
            direction=Direction.IN.value,
            body=body,
            sent_at=sent_at or datetime.utcnow(),
            ai_generated=False,
            delivery_status=DeliveryStatus.SENT.value,
        )
        self.session.add(msg)
        await self.session.flush()
        return msg

    async def create_outbound(
        self,
        lead_id: str,
        body: str,
        to_number: str,
        correlation_id: str,
        ai_generated: bool = True,
        strategy: Optional[str] = None,
        sent_at: Optional[datetime] = None,
    ) -> Message:
        msg = Message(
            lead_id=lead_id,
            direction=Direction.OUT.value,
            body=body,
            to_number=to_number,
            sent_at=sent_at or datetime.utcnow(),
            ai_generated=ai_generated,
            delivery_status=DeliveryStatus.PENDING.value,
            correlation_id=correlation_id,
            strategy=strategy,
        )
        self.session.add(msg)
        await self.session.flush()
        return msg

    async def get_by_id(self, message_id: str) -> Optional[Message]:
        result = await self.session.execute(select(Message).where(Message.id == message_id))
        return result.scalar_one_or_none()

    async def mark_sent(self, message_id: str, provider_id: Optional[str]) -> None:
        # Only a pending row may transition; sent rows are immutable
        await self.session.execute(
            update(Message)
            .where(Message.id == message_id, Message.delivery_status == DeliveryStatus.PENDING.value)
            .values(delivery_status=DeliveryStatus.SENT.value, provider_id=provider_id)
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, message_id: str, error: str) -> None:
        # A failed send gives its correlation id back so the same due condition can retry
        await self.session.execute(
            update(Message)
            .where(Message.id == message_id, Message.delivery_status == DeliveryStatus.PENDING.value)
            .values(
                delivery_status=DeliveryStatus.FAILED.value,
                error=error,
                correlation_id=Message.correlation_id + ":failed:" + Message.id,
            )
            .execution_options(synchronize_session=False)
        )

    async def get_transcript(self, lead_id: str, limit: int = 200) -> List[Message]:
        """Messages for a lead in chronological order."""
        result = await self.session.execute(
            select(Message)
            .where(Message.lead_id == lead_id)
            .order_by(Message.sent_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_last_message(self, lead_id: str) -> Optional[Message]:
        result = await self.session.execute(
            select(Message)
            .where(Message.lead_id == lead_id)
            .order_by(Message.sent_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def last_inbound_since(self, lead_id: str, since: datetime) -> Optional[Message]:
        result = await self.session.execute(
            select(Message)
            .where(
                Message.lead_id == lead_id,
                Message.direction == Direction.IN.value,
                Message.sent_at >= since,
            )
            .order_by(Message.sent_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_ai_outbound_since(self, lead_id: str, since: datetime) -> int:
        """AI outbound messages that were sent or are still in flight."""
        result = await self.session.execute(
            select(func.count(Message.id)).where(
                Message.lead_id == lead_id,
                Message.direction == Direction.OUT.value,
                Message.ai_generated.is_(True),
                Message.delivery_status.in_([DeliveryStatus.PENDING.value, DeliveryStatus.SENT.value]),
                Message.sent_at > since,
            )
        )
        return result.scalar() or 0

    async def count_sends_to_number_since(self, number: str, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(Message.id)).where(
                Message.to_number == number,
                Message.direction == Direction.OUT.value,
                Message.delivery_status.in_([DeliveryStatus.PENDING.value, DeliveryStatus.SENT.value]),
                Message.sent_at > since,
            )
        )
        return result.scalar() or 0


class SuppressionRepository:
    """Data access for the suppression list."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def is_suppressed(self, number: str, channel: str = "sms") -> bool:
        result = await self.session.execute(
            select(func.count(SuppressedNumber.id)).where(
                SuppressedNumber.number == number,
                SuppressedNumber.channel == channel,
            )
        )
        return (result.scalar() or 0) > 0

    async def add(self, number: str, reason: str, channel: str = "sms") -> bool:
        """Add a number. Returns False if it was already suppressed."""
        if await self.is_suppressed(number, channel):
            return False
        self.session.add(SuppressedNumber(number=number, channel=channel, reason=reason))
        await self.session.flush()
        logger.info(f"Number {number} added to suppression list ({reason})")
        return True


class ScheduleRepository:
    """Data access for the aggressive multi-day schedule."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def clear_unsent(self, lead_id: str) -> int:
        result = await self.session.execute(
            delete(AggressiveScheduleEntry).where(
                AggressiveScheduleEntry.lead_id == lead_id,
                AggressiveScheduleEntry.sent.is_(False),
            )
        )
        return result.rowcount or 0

    async def bulk_create(self, entries: Sequence[AggressiveScheduleEntry]) -> None:
        self.session.add_all(list(entries))
        await self.session.flush()

    async def list_for_lead(self, lead_id: str) -> List[AggressiveScheduleEntry]:
        result = await self.session.execute(
            select(AggressiveScheduleEntry)
            .where(AggressiveScheduleEntry.lead_id == lead_id)
            .order_by(AggressiveScheduleEntry.scheduled_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_due(self, now: datetime, limit: int = 50) -> List[AggressiveScheduleEntry]:
        result = await self.session.execute(
            select(AggressiveScheduleEntry)
            .join(Lead, Lead.id == AggressiveScheduleEntry.lead_id)
            .where(
                AggressiveScheduleEntry.scheduled_at <= now,
                AggressiveScheduleEntry.sent.is_(False),
                AggressiveScheduleEntry.skip_reason.is_(None),
                _entry_claim_free(now),
                Lead.sequence_paused.is_(False),
            )
            .order_by(AggressiveScheduleEntry.scheduled_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim_entry(self, entry_id: str, sweep_id: str, now: datetime, ttl_seconds: int) -> bool:
        """Conditional claim: entry unsent, unclaimed (or claim expired) and its lead not paused."""
        lead_active = (
            select(Lead.id)
            .where(Lead.id == AggressiveScheduleEntry.lead_id, Lead.sequence_paused.is_(False))
            .exists()
        )
        result = await self.session.execute(
            update(AggressiveScheduleEntry)
            .where(
                AggressiveScheduleEntry.id == entry_id,
                AggressiveScheduleEntry.sent.is_(False),
                AggressiveScheduleEntry.skip_reason.is_(None),
                _entry_claim_free(now),
                lead_active,
            )
            .values(claimed_by=sweep_id, claimed_until=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_entry(self, entry_id: str, sweep_id: str) -> None:
        await self.session.execute(
            update(AggressiveScheduleEntry)
            .where(AggressiveScheduleEntry.id == entry_id, AggressiveScheduleEntry.claimed_by == sweep_id)
            .values(claimed_by=None, claimed_until=None)
            .execution_options(synchronize_session=False)
        )

    async def mark_sent(self, entry_id: str, message_id: str, sent_at: datetime) -> None:
        await self.session.execute(
            update(AggressiveScheduleEntry)
            .where(AggressiveScheduleEntry.id == entry_id)
            .values(sent=True, sent_at=sent_at, message_id=message_id, claimed_by=None, claimed_until=None)
            .execution_options(synchronize_session=False)
        )

    async def skip(self, entry_id: str, reason: str) -> None:
        await self.session.execute(
            update(AggressiveScheduleEntry)
            .where(AggressiveScheduleEntry.id == entry_id, AggressiveScheduleEntry.sent.is_(False))
            .values(skip_reason=reason, claimed_by=None, claimed_until=None)
            .execution_options(synchronize_session=False)
        )

    async def skip_remaining(self, lead_id: str, reason: str) -> int:
        result = await self.session.execute(
            update(AggressiveScheduleEntry)
            .where(
                AggressiveScheduleEntry.lead_id == lead_id,
                AggressiveScheduleEntry.sent.is_(False),
                AggressiveScheduleEntry.skip_reason.is_(None),
            )
            .values(skip_reason=reason, claimed_by=None, claimed_until=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class TriggerRepository:
    """Data access for behavioral triggers."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> BehavioralTrigger:
        trigger = BehavioralTrigger(**kwargs)
        self.session.add(trigger)
        await self.session.flush()
        return trigger

    async def last_detected_at(self, lead_id: str, trigger_type: str) -> Optional[datetime]:
        result = await self.session.execute(
            select(func.max(BehavioralTrigger.detected_at)).where(
                BehavioralTrigger.lead_id == lead_id,
                BehavioralTrigger.trigger_type == trigger_type,
            )
        )
        return result.scalar()

    async def get_pending(self, limit: int = 50) -> List[BehavioralTrigger]:
        result = await self.session.execute(
            select(BehavioralTrigger)
            .where(BehavioralTrigger.processed_at.is_(None))
            .order_by(BehavioralTrigger.detected_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_processed(self, trigger_id: str) -> bool:
        result = await self.session.execute(
            update(BehavioralTrigger)
            .where(BehavioralTrigger.id == trigger_id, BehavioralTrigger.processed_at.is_(None))
            .values(processed_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class LearningRepository:
    """Data access for learning analytics, patterns, outcomes and insights."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_analytics(self, **kwargs) -> MessageAnalytics:
        row = MessageAnalytics(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def latest_unanswered(self, lead_id: str, before: datetime) -> Optional[MessageAnalytics]:
        result = await self.session.execute(
            select(MessageAnalytics)
            .where(
                MessageAnalytics.lead_id == lead_id,
                MessageAnalytics.response_received.is_(False),
                MessageAnalytics.sent_at <= before,
            )
            .order_by(MessageAnalytics.sent_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_or_create_pattern(self, lead_id: str) -> CommunicationPattern:
        result = await self.session.execute(
            select(CommunicationPattern).where(CommunicationPattern.lead_id == lead_id)
        )
        pattern = result.scalar_one_or_none()
        if pattern is None:
            pattern = CommunicationPattern(lead_id=lead_id, messages_sent=0, responses=0)
            self.session.add(pattern)
            await self.session.flush()
        return pattern

    async def add_outcome(self, **kwargs) -> LearningOutcome:
        row = LearningOutcome(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def responded_since(self, since: datetime) -> List[MessageAnalytics]:
        result = await self.session.execute(
            select(MessageAnalytics).where(
                MessageAnalytics.response_time_minutes.is_not(None),
                MessageAnalytics.sent_at >= since,
            )
        )
        return list(result.scalars().all())

    async def template_stats(self) -> List[Dict[str, Any]]:
        """Per-template send and response counts."""
        result = await self.session.execute(
            select(
                MessageAnalytics.template_id,
                func.count(MessageAnalytics.id),
                func.sum(case((MessageAnalytics.response_received.is_(True), 1), else_=0)),
            )
            .where(MessageAnalytics.template_id.is_not(None))
            .group_by(MessageAnalytics.template_id)
        )
        return [
            {"template_id": template_id, "sent": sent or 0, "responses": responses or 0}
            for template_id, sent, responses in result.all()
        ]

    async def list_patterns(self, limit: int = 100) -> List[CommunicationPattern]:
        result = await self.session.execute(
            select(CommunicationPattern)
            .where(CommunicationPattern.messages_sent > 0)
            .order_by(CommunicationPattern.updated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def converted_lead_ids(self, limit: int = 20) -> List[str]:
        result = await self.session.execute(
            select(LearningOutcome.lead_id)
            .where(LearningOutcome.outcome_type == "conversion")
            .order_by(LearningOutcome.created_at.desc())
            .limit(limit)
        )
        return list(dict.fromkeys(result.scalars().all()))

    async def add_insight(self, **kwargs) -> OptimizationInsight:
        row = OptimizationInsight(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_insights(self, limit: int = 10) -> List[OptimizationInsight]:
        result = await self.session.execute(
            select(OptimizationInsight).order_by(OptimizationInsight.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
