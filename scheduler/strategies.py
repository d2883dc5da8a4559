"""
Strategy registry for the Lead Engagement Engine.

Each engagement flow is an ``EngagementStrategy`` subclass registered against
a ``StrategyKind``. The sweep runs every registered strategy in enum order.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from database.models import Lead
from database.repositories import LeadRepository, MessageRepository
from database.session import Database
from engagement.conversation_analyzer import ConversationAnalysis, ConversationAnalyzer, TranscriptMessage
from llm.message_generator import GeneratedMessage, MessageGenerator

from .dispatcher import Dispatcher, DispatchResult
from .errors import (
    ComplianceBlocked, DeliveryFailure, FrequencyCapReached, GenerationFailure,
    SchedulingNoOp, ValidationError,
)

logger = logging.getLogger(__name__)


class StrategyKind(Enum):
    """Closed set of engagement flows, in sweep order."""
    INITIAL_CONTACT = "initial_contact"
    CONVERSATION_ADVANCEMENT = "conversation_advancement"
    AGGRESSIVE_SEQUENCE = "aggressive_sequence"
    AI_TAKEOVER = "ai_takeover"


STRATEGY_REGISTRY: Dict[StrategyKind, Type["EngagementStrategy"]] = {}


def register_strategy(kind: StrategyKind):
    """Class decorator binding a strategy implementation to its kind."""
    def decorator(cls: Type["EngagementStrategy"]) -> Type["EngagementStrategy"]:
        if kind in STRATEGY_REGISTRY and STRATEGY_REGISTRY[kind] is not cls:
            raise ValueError(f"Strategy already registered for {kind.value}")
        cls.kind = kind
        STRATEGY_REGISTRY[kind] = cls
        return cls
    return decorator


@dataclass
class EngineServices:
    """Collaborators and timing knobs shared by every strategy."""
    database: Database
    dispatcher: Dispatcher
    generator: MessageGenerator
    fallback_generator: Optional[MessageGenerator] = None
    analyzer: ConversationAnalyzer = field(default_factory=ConversationAnalyzer)
    followup_min_hours: float = 2.0
    followup_max_hours: float = 3.0
    advancement_threshold_hours: float = 2.0
    lead_limit: int = 50
    claim_ttl_seconds: int = 300
    ai_takeover_delay_minutes: int = 7
    timezone: str = "America/Chicago"
    event_sink: Optional[Callable[[str, str, Dict[str, Any]], Awaitable[None]]] = None

    def next_followup_at(self, now: datetime) -> datetime:
        hours = random.uniform(self.followup_min_hours, self.followup_max_hours)
        return now + timedelta(hours=hours)

    async def analyze_lead(self, lead: Lead) -> Tuple[List[TranscriptMessage], ConversationAnalysis]:
        async with self.database.session() as session:
            messages = await MessageRepository(session).get_transcript(lead.id)
        transcript = [TranscriptMessage(direction=m.direction, body=m.body, sent_at=m.sent_at) for m in messages]
        return transcript, self.analyzer.analyze(transcript, vehicle_interest_text=lead.vehicle_interest)


@dataclass
class SweepContext:
    """Per-sweep state handed to each strategy."""
    sweep_id: str
    now: datetime
    pace: Callable[[], Awaitable[None]]


@dataclass
class StrategyResult:
    kind: StrategyKind
    considered: int = 0
    sent: int = 0
    paused: int = 0
    noop: int = 0
    capped: int = 0
    blocked: int = 0
    invalid: int = 0
    failed: int = 0
    errors: int = 0
    message_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "considered": self.considered,
            "sent": self.sent,
            "paused": self.paused,
            "noop": self.noop,
            "capped": self.capped,
            "blocked": self.blocked,
            "invalid": self.invalid,
            "failed": self.failed,
            "errors": self.errors,
            "message_ids": self.message_ids,
        }


class EngagementStrategy(ABC):
    """
    One engagement flow.

    Subclasses implement ``due`` (what to look at this sweep) and ``handle``
    (claim, compose and dispatch for one item). ``run`` isolates failures per
    item so one bad lead never aborts the sweep.
    """

    kind: StrategyKind

    def __init__(self, services: EngineServices):
        self.services = services

    @abstractmethod
    async def due(self, ctx: SweepContext) -> List[Any]:
        ...

    @abstractmethod
    async def handle(self, item: Any, ctx: SweepContext, result: StrategyResult) -> Optional[DispatchResult]:
        ...

    async def run(self, ctx: SweepContext) -> StrategyResult:
        result = StrategyResult(kind=self.kind)
        items = await self.due(ctx)
        result.considered = len(items)
        if items:
            logger.info(f"[{self.kind.value}] {len(items)} due")

        for item in items:
            lead_id = getattr(item, "lead_id", None) or getattr(item, "id", None)
            try:
                sent = await self.handle(item, ctx, result)
                if sent is not None:
                    result.sent += 1
                    result.message_ids.append(sent.message_id)
                    await ctx.pace()
            except FrequencyCapReached as e:
                result.capped += 1
                logger.info(f"[{self.kind.value}] lead {lead_id} at frequency cap: {e}")
            except SchedulingNoOp as e:
                result.noop += 1
                logger.debug(f"[{self.kind.value}] lead {lead_id} skipped: {e}")
            except ComplianceBlocked as e:
                result.blocked += 1
                logger.warning(f"[{self.kind.value}] lead {lead_id} blocked by compliance ({e.reason})")
            except ValidationError as e:
                result.invalid += 1
                logger.warning(f"[{self.kind.value}] lead {lead_id} invalid: {e}")
            except (GenerationFailure, DeliveryFailure) as e:
                result.failed += 1
                logger.error(f"[{self.kind.value}] lead {lead_id} failed: {e}")
            except Exception as e:
                result.errors += 1
                logger.error(f"[{self.kind.value}] unexpected error for lead {lead_id}: {e}", exc_info=True)
        return result

    # ── Shared helpers ────────────────────────────────

    async def claim(self, lead_id: str, ctx: SweepContext, *conditions: Any, **values: Any) -> None:
        """
        Raises:
            SchedulingNoOp: another sweep holds the lead or it is no longer due
        """
        async with self.services.database.session() as session:
            won = await LeadRepository(session).claim(
                lead_id, ctx.sweep_id, ctx.now, self.services.claim_ttl_seconds, *conditions, **values
            )
        if not won:
            raise SchedulingNoOp("Lead already claimed or no longer due", lead_id=lead_id)

    async def release(self, lead_id: str, ctx: SweepContext, **values: Any) -> None:
        async with self.services.database.session() as session:
            await LeadRepository(session).release(lead_id, ctx.sweep_id, **values)

    async def build_generation_context(self, lead: Lead) -> Dict[str, Any]:
        transcript, analysis = await self.services.analyze_lead(lead)
        return {
            "lead_id": lead.id,
            "first_name": lead.first_name,
            "vehicle": lead.vehicle_interest,
            "strategy": self.kind.value,
            "analysis": analysis.to_dict(),
            "history": [{"direction": m.direction, "body": m.body} for m in transcript],
        }

    async def generate(self, lead: Lead) -> GeneratedMessage:
        """
        Ask the generator for a message, falling back to templates.

        Raises:
            GenerationFailure: both the generator and the fallback failed
        """
        context = await self.build_generation_context(lead)
        try:
            return await self.services.generator.generate(context)
        except GenerationFailure as e:
            if self.services.fallback_generator is None:
                raise
            logger.warning(f"Generation failed for lead {lead.id}, using template fallback: {e}")
            return await self.services.fallback_generator.generate(context)
