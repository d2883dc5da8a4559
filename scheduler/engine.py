"""
Sweep engine for the Lead Engagement Engine.

``EngagementEngine.process()`` is the bounded tick an external scheduler
invokes. One sweep:

1. runs the behavioral trigger engine and predictive scorer over active leads
2. runs every registered engagement strategy in order
3. flushes the learning feedback loop

The engine is built once by ``build_engine`` at startup and passed around
explicitly; there is no module-level instance.
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from api.channels.base import LoggingGateway, MessagingGateway
from api.channels.sms import TwilioSMSGateway
from config.settings import Settings
from database.repositories import LeadRepository
from database.session import Database
from engagement.conversation_analyzer import ConversationAnalyzer
from engagement.predictive_scorer import DecisionType, PredictiveScorer
from engagement.trigger_engine import BehavioralTriggerEngine
from learning.feedback_loop import LearningFeedbackLoop
from llm.message_generator import MessageGenerator, TemplateMessageGenerator, build_generator

from . import advancement, aggressive_sequence, initial_contact, takeover  # noqa: F401  (register strategies)
from .aggressive_sequence import SequenceManager
from .compliance import ComplianceGate
from .dispatcher import Dispatcher
from .strategies import STRATEGY_REGISTRY, EngineServices, StrategyKind, StrategyResult, SweepContext
from .takeover import record_inbound

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    sweep_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    leads_scanned: int = 0
    triggers_fired: int = 0
    predictions: int = 0
    decisions: List[Dict[str, Any]] = field(default_factory=list)
    strategies: Dict[str, StrategyResult] = field(default_factory=dict)
    insights: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def messages_sent(self) -> int:
        return sum(r.sent for r in self.strategies.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sweep_id": self.sweep_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "leads_scanned": self.leads_scanned,
            "triggers_fired": self.triggers_fired,
            "predictions": self.predictions,
            "decisions": self.decisions,
            "strategies": {k: r.to_dict() for k, r in self.strategies.items()},
            "messages_sent": self.messages_sent,
            "insights": self.insights,
            "errors": self.errors,
        }


class EngagementEngine:
    """Coordinates one sweep across analysis, scheduling and learning."""

    def __init__(
        self,
        services: EngineServices,
        trigger_engine: BehavioralTriggerEngine,
        scorer: PredictiveScorer,
        learning: LearningFeedbackLoop,
        sequences: SequenceManager,
        send_delay_range: tuple = (1.0, 3.0),
    ):
        self.services = services
        self.trigger_engine = trigger_engine
        self.scorer = scorer
        self.learning = learning
        self.sequences = sequences
        self.send_delay_range = send_delay_range
        self.strategies = [
            STRATEGY_REGISTRY[kind](services) for kind in StrategyKind if kind in STRATEGY_REGISTRY
        ]

    @property
    def database(self) -> Database:
        return self.services.database

    async def _pace(self) -> None:
        low, high = self.send_delay_range
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))

    async def process(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep. Never raises for a single lead's failure."""
        now = now or datetime.utcnow()
        report = SweepReport(sweep_id=str(uuid.uuid4()), started_at=now)
        logger.info(f"Sweep {report.sweep_id} started")

        try:
            await self._analyze_leads(now, report)
        except Exception as e:
            logger.error(f"Lead analysis phase failed: {e}", exc_info=True)
            report.errors.append(f"analysis: {e}")

        ctx = SweepContext(sweep_id=report.sweep_id, now=now, pace=self._pace)
        for strategy in self.strategies:
            try:
                report.strategies[strategy.kind.value] = await strategy.run(ctx)
            except Exception as e:
                logger.error(f"Strategy {strategy.kind.value} failed: {e}", exc_info=True)
                report.errors.append(f"{strategy.kind.value}: {e}")

        try:
            report.insights = len(await self.learning.flush(now))
        except Exception as e:
            logger.error(f"Learning flush failed: {e}", exc_info=True)
            report.errors.append(f"learning: {e}")

        report.finished_at = datetime.utcnow()
        logger.info(
            f"Sweep {report.sweep_id} finished: {report.messages_sent} sent, "
            f"{report.triggers_fired} triggers, {len(report.errors)} errors"
        )
        return report

    async def _analyze_leads(self, now: datetime, report: SweepReport) -> None:
        async with self.database.session() as session:
            leads = await LeadRepository(session).list_active(limit=self.services.lead_limit)
        lead_ids = [lead.id for lead in leads]
        report.leads_scanned = len(lead_ids)

        fired = await self.trigger_engine.process_leads(lead_ids, now=now)
        report.triggers_fired = len(fired)

        for lead_id in lead_ids:
            try:
                prediction = await self.scorer.predict(lead_id, now=now)
            except Exception as e:
                logger.error(f"Prediction failed for lead {lead_id}: {e}")
                continue
            if prediction is None:
                continue
            report.predictions += 1
            for decision in self.scorer.decide(prediction):
                if decision.decision_type != DecisionType.MESSAGE_TIMING:
                    report.decisions.append(decision.to_dict())

    # ── Lead-level operations ─────────────────────────

    async def record_inbound(
        self,
        lead_id: str,
        body: str,
        now: Optional[datetime] = None,
        from_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await record_inbound(self.services, lead_id, body, now=now, from_number=from_number)

    async def start_aggressive_sequence(self, lead_id: str, now: Optional[datetime] = None) -> int:
        entries = await self.sequences.start_sequence(lead_id, now=now)
        return len(entries)

    async def pause_aggressive_sequence(self, lead_id: str, reason: str = "manual") -> bool:
        return await self.sequences.pause_sequence(lead_id, reason)

    async def resume_aggressive_sequence(self, lead_id: str, now: Optional[datetime] = None) -> int:
        return await self.sequences.resume_sequence(lead_id, now=now)

    async def analyze_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        """Conversation analysis for one lead, as used when composing messages."""
        async with self.database.session() as session:
            lead = await LeadRepository(session).get_by_id(lead_id)
        if lead is None:
            return None
        _, analysis = await self.services.analyze_lead(lead)
        return analysis.to_dict()

    async def close(self) -> None:
        await self.learning.flush()


def build_gateway(settings: Settings) -> MessagingGateway:
    if settings.gateway_configured:
        return TwilioSMSGateway(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            status_callback_url=settings.twilio_status_callback_url,
            timeout=settings.gateway_timeout_seconds,
        )
    logger.warning("Twilio is not configured, outbound SMS will only be logged")
    return LoggingGateway()


def build_engine(
    settings: Settings,
    database: Database,
    gateway: Optional[MessagingGateway] = None,
    generator: Optional[MessageGenerator] = None,
) -> EngagementEngine:
    """Wire every collaborator of the engine from settings."""
    learning = LearningFeedbackLoop(
        database,
        batch_size=settings.learning_batch_size,
        timezone=settings.dealership_timezone,
    )
    gate = ComplianceGate(
        database,
        rate_limit_max_sends=settings.rate_limit_max_sends,
        rate_limit_window_minutes=settings.rate_limit_window_minutes,
        consent_hard_gate=settings.consent_hard_gate,
        enforce_business_hours=settings.enforce_business_hours,
        business_hours_start=settings.business_hours_start,
        business_hours_end=settings.business_hours_end,
        default_timezone=settings.dealership_timezone,
    )
    dispatcher = Dispatcher(
        database,
        gateway or build_gateway(settings),
        gate,
        max_ai_messages_per_24h=settings.max_ai_messages_per_24h,
        auto_suppress_after_failures=settings.auto_suppress_after_failures,
        timezone=settings.dealership_timezone,
        event_sink=learning.emit,
    )
    services = EngineServices(
        database=database,
        dispatcher=dispatcher,
        generator=generator or build_generator(settings),
        fallback_generator=TemplateMessageGenerator(settings.dealership_name, settings.salesperson_name),
        analyzer=ConversationAnalyzer(),
        followup_min_hours=settings.followup_min_hours,
        followup_max_hours=settings.followup_max_hours,
        advancement_threshold_hours=settings.advancement_threshold_hours,
        lead_limit=settings.sweep_lead_limit,
        claim_ttl_seconds=settings.claim_ttl_seconds,
        ai_takeover_delay_minutes=settings.ai_takeover_delay_minutes,
        timezone=settings.dealership_timezone,
        event_sink=learning.emit,
    )
    trigger_engine = BehavioralTriggerEngine(
        database,
        cooldown_hours=settings.trigger_cooldown_hours,
        event_sink=learning.emit,
    )
    scorer = PredictiveScorer(
        database,
        base_vehicle_price=settings.default_vehicle_price,
        timezone=settings.dealership_timezone,
    )
    return EngagementEngine(
        services=services,
        trigger_engine=trigger_engine,
        scorer=scorer,
        learning=learning,
        sequences=SequenceManager(database, timezone=settings.dealership_timezone),
        send_delay_range=(settings.send_delay_min_seconds, settings.send_delay_max_seconds),
    )
