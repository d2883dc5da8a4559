"""
Behavioral Trigger Engine for the Lead Engagement Engine.

Evaluates a fixed catalog of declarative rules against a numeric context
derived from each lead's conversation, and records the rules that fire.
"""

import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from database.models import Lead, Message
from database.repositories import LeadRepository, MessageRepository, TriggerRepository
from database.session import Database

logger = logging.getLogger(__name__)


class TriggerType(Enum):
    ENGAGEMENT_DROP = "engagement_drop"
    HIGH_INTENT = "high_intent"
    COMPETITOR_MENTION = "competitor_mention"
    URGENCY_SIGNAL = "urgency_signal"


class UrgencyLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Metric(Enum):
    """Numeric fields of TriggerContext a condition can test."""
    DAYS_SINCE_CREATED = "days_since_created"
    DAYS_SINCE_LAST_REPLY = "days_since_last_reply"
    RESPONSE_RATE = "response_rate"
    PRICE_INQUIRIES = "price_inquiries"
    URGENCY_KEYWORDS = "urgency_keywords"
    COMPETITOR_MENTIONS = "competitor_mentions"
    SENTIMENT_SCORE = "sentiment_score"
    RECENT_ENGAGEMENT = "recent_engagement"
    PREVIOUS_ENGAGEMENT = "previous_engagement"
    ENGAGEMENT_TREND = "engagement_trend"
    TIMEFRAME_DAYS = "timeframe_days"


class Operator(Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NEQ = "neq"


_COMPARATORS: Dict[Operator, Callable[[float, float], bool]] = {
    Operator.GT: operator.gt,
    Operator.GTE: operator.ge,
    Operator.LT: operator.lt,
    Operator.LTE: operator.le,
    Operator.EQ: operator.eq,
    Operator.NEQ: operator.ne,
}


@dataclass(frozen=True)
class Condition:
    """A typed comparison of one context metric against a threshold."""
    metric: Metric
    op: Operator
    threshold: float

    def __post_init__(self):
        if not isinstance(self.metric, Metric):
            raise ValueError(f"Unknown metric: {self.metric!r}")
        if not isinstance(self.op, Operator):
            raise ValueError(f"Unknown operator: {self.op!r}")

    def evaluate(self, context: "TriggerContext") -> bool:
        return _COMPARATORS[self.op](context.value(self.metric), self.threshold)


@dataclass(frozen=True)
class TriggerRule:
    trigger_type: TriggerType
    conditions: Sequence[Condition]
    action: str
    urgency_level: UrgencyLevel


@dataclass
class TriggerContext:
    """Numeric view of a lead's engagement."""
    days_since_created: float = 0.0
    days_since_last_reply: float = 999.0
    response_rate: float = 0.0
    price_inquiries: int = 0
    urgency_keywords: int = 0
    competitor_mentions: int = 0
    sentiment_score: float = 0.5
    recent_engagement: float = 0.0
    previous_engagement: float = 0.0
    engagement_trend: float = 0.0
    timeframe_days: int = 30
    total_messages: int = 0
    inbound_messages: int = 0
    outbound_messages: int = 0

    def value(self, metric: Metric) -> float:
        return float(getattr(self, metric.value))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days_since_created": round(self.days_since_created, 2),
            "days_since_last_reply": round(self.days_since_last_reply, 2),
            "response_rate": round(self.response_rate, 3),
            "price_inquiries": self.price_inquiries,
            "urgency_keywords": self.urgency_keywords,
            "competitor_mentions": self.competitor_mentions,
            "sentiment_score": round(self.sentiment_score, 3),
            "recent_engagement": self.recent_engagement,
            "previous_engagement": self.previous_engagement,
            "engagement_trend": round(self.engagement_trend, 3),
            "timeframe_days": self.timeframe_days,
            "total_messages": self.total_messages,
        }


@dataclass
class TriggerMatch:
    """A rule that fired for a lead."""
    lead_id: str
    trigger_type: TriggerType
    urgency_level: UrgencyLevel
    confidence: float
    recommended_action: str
    context: Dict[str, Any] = field(default_factory=dict)
    trigger_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "lead_id": self.lead_id,
            "trigger_type": self.trigger_type.value,
            "urgency_level": self.urgency_level.value,
            "confidence": self.confidence,
            "recommended_action": self.recommended_action,
            "context": self.context,
        }


def _c(metric: Metric, op: Operator, threshold: float) -> Condition:
    return Condition(metric, op, threshold)


DEFAULT_RULES: List[TriggerRule] = [
    TriggerRule(
        TriggerType.ENGAGEMENT_DROP,
        [
            _c(Metric.DAYS_SINCE_LAST_REPLY, Operator.GT, 7),
            _c(Metric.PREVIOUS_ENGAGEMENT, Operator.GT, 0.3),
        ],
        "re_engagement_campaign",
        UrgencyLevel.MEDIUM,
    ),
    TriggerRule(
        TriggerType.HIGH_INTENT,
        [
            _c(Metric.PRICE_INQUIRIES, Operator.GT, 2),
            _c(Metric.RESPONSE_RATE, Operator.GT, 0.6),
        ],
        "priority_follow_up",
        UrgencyLevel.HIGH,
    ),
    TriggerRule(
        TriggerType.COMPETITOR_MENTION,
        [_c(Metric.COMPETITOR_MENTIONS, Operator.GT, 0)],
        "competitive_response",
        UrgencyLevel.HIGH,
    ),
    TriggerRule(
        TriggerType.URGENCY_SIGNAL,
        [
            _c(Metric.URGENCY_KEYWORDS, Operator.GT, 0),
            _c(Metric.TIMEFRAME_DAYS, Operator.LTE, 7),
        ],
        "immediate_contact",
        UrgencyLevel.CRITICAL,
    ),
]


class BehavioralTriggerEngine:
    """
    Fires behavioral triggers for leads.

    A rule fires when the fraction of its satisfied conditions is at least
    FIRE_THRESHOLD (0.7); the trigger confidence is that fraction.
    """

    FIRE_THRESHOLD = 0.7

    PRICE_KEYWORDS = ["price", "cost", "how much", "payment", "finance", "lease", "monthly", "down payment"]
    URGENCY_KEYWORDS = ["asap", "urgent", "quickly", "soon", "today", "tomorrow", "this week", "need now"]
    COMPETITOR_KEYWORDS = [
        "toyota", "honda", "ford", "nissan", "hyundai", "kia", "subaru", "mazda",
        "other dealer", "better price", "comparing", "shop around",
    ]
    TIMEFRAME_KEYWORDS = ["today", "tomorrow", "this week", "asap", "right away", "this weekend"]
    POSITIVE_WORDS = ["great", "good", "excellent", "interested", "love", "perfect", "yes", "thanks", "awesome"]
    NEGATIVE_WORDS = ["no", "not", "bad", "terrible", "expensive", "stop", "never", "unhappy", "problem"]

    def __init__(
        self,
        database: Database,
        rules: Optional[List[TriggerRule]] = None,
        cooldown_hours: float = 0.0,
        event_sink: Optional[Callable[[str, str, Dict[str, Any]], Awaitable[None]]] = None,
    ):
        """
        Args:
            database: Database handle
            rules: Rule catalog (defaults to DEFAULT_RULES)
            cooldown_hours: Minimum hours before the same (lead, type) may fire again; 0 disables
            event_sink: Async callback(event_type, lead_id, payload) for learning events
        """
        self.database = database
        self.rules = rules if rules is not None else list(DEFAULT_RULES)
        self.cooldown_hours = cooldown_hours
        self.event_sink = event_sink

    # ── Context ───────────────────────────────────────

    def build_context(self, lead: Lead, messages: Sequence[Message], now: datetime) -> TriggerContext:
        inbound = [m for m in messages if m.direction == "in"]
        outbound = [m for m in messages if m.direction == "out"]
        inbound_text = " ".join(m.body.lower() for m in inbound)

        created = lead.created_at or now
        last_reply = max((m.sent_at for m in inbound), default=None)
        week_ago = now - timedelta(days=7)
        two_weeks_ago = now - timedelta(days=14)

        recent = sum(1 for m in inbound if m.sent_at >= week_ago)
        previous = sum(1 for m in inbound if two_weeks_ago <= m.sent_at < week_ago)

        return TriggerContext(
            days_since_created=(now - created).total_seconds() / 86400,
            days_since_last_reply=(now - last_reply).total_seconds() / 86400 if last_reply else 999.0,
            response_rate=len(inbound) / max(len(outbound), 1),
            price_inquiries=self._count_keywords(inbound_text, self.PRICE_KEYWORDS),
            urgency_keywords=self._count_keywords(inbound_text, self.URGENCY_KEYWORDS),
            competitor_mentions=self._count_keywords(inbound_text, self.COMPETITOR_KEYWORDS),
            sentiment_score=self._sentiment(inbound_text),
            recent_engagement=recent,
            previous_engagement=previous,
            engagement_trend=(recent - previous) / previous if previous else float(recent),
            timeframe_days=7 if any(k in inbound_text for k in self.TIMEFRAME_KEYWORDS) else 30,
            total_messages=len(messages),
            inbound_messages=len(inbound),
            outbound_messages=len(outbound),
        )

    @staticmethod
    def _count_keywords(text: str, keywords: List[str]) -> int:
        return sum(text.count(k) for k in keywords)

    def _sentiment(self, text: str) -> float:
        words = text.split()
        score = 0.5
        for word in words:
            token = word.strip(".,!?;:\"'")
            if token in self.POSITIVE_WORDS:
                score += 0.1
            if token in self.NEGATIVE_WORDS:
                score -= 0.15
        return max(0.0, min(1.0, score))

    # ── Evaluation ────────────────────────────────────

    def evaluate_rules(self, lead_id: str, context: TriggerContext) -> List[TriggerMatch]:
        """Pure rule evaluation; no persistence."""
        matches: List[TriggerMatch] = []
        for rule in self.rules:
            if not rule.conditions:
                continue
            met = sum(1 for c in rule.conditions if c.evaluate(context))
            fraction = met / len(rule.conditions)
            if fraction >= self.FIRE_THRESHOLD:
                matches.append(TriggerMatch(
                    lead_id=lead_id,
                    trigger_type=rule.trigger_type,
                    urgency_level=rule.urgency_level,
                    confidence=round(fraction, 3),
                    recommended_action=rule.action,
                    context=context.to_dict(),
                ))
        return matches

    async def detect_triggers(self, lead_id: str, now: Optional[datetime] = None) -> List[TriggerMatch]:
        """Evaluate all rules for one lead and persist the ones that fire."""
        now = now or datetime.utcnow()
        fired: List[TriggerMatch] = []

        async with self.database.session() as session:
            lead = await LeadRepository(session).get_by_id(lead_id)
            if lead is None:
                return fired
            messages = await MessageRepository(session).get_transcript(lead_id)
            context = self.build_context(lead, messages, now)
            triggers = TriggerRepository(session)

            for match in self.evaluate_rules(lead_id, context):
                if self.cooldown_hours > 0:
                    last = await triggers.last_detected_at(lead_id, match.trigger_type.value)
                    if last and now - last < timedelta(hours=self.cooldown_hours):
                        logger.debug(f"Trigger {match.trigger_type.value} for {lead_id} in cool-down")
                        continue
                row = await triggers.create(
                    lead_id=lead_id,
                    trigger_type=match.trigger_type.value,
                    urgency_level=match.urgency_level.value,
                    confidence=match.confidence,
                    context=match.context,
                    recommended_action=match.recommended_action,
                    detected_at=now,
                )
                match.trigger_id = row.id
                fired.append(match)

        for match in fired:
            logger.info(
                f"Trigger fired: {match.trigger_type.value} for lead {lead_id} "
                f"(confidence {match.confidence}, urgency {match.urgency_level.value})"
            )
            if self.event_sink:
                await self.event_sink("trigger_fired", lead_id, match.to_dict())
        return fired

    async def process_leads(self, lead_ids: Sequence[str], now: Optional[datetime] = None) -> List[TriggerMatch]:
        """Run detection for many leads; one failing lead does not stop the rest."""
        fired: List[TriggerMatch] = []
        for lead_id in lead_ids:
            try:
                fired.extend(await self.detect_triggers(lead_id, now=now))
            except Exception as e:
                logger.error(f"Trigger detection failed for lead {lead_id}: {e}")
        return fired

    # ── Queries ───────────────────────────────────────

    async def get_detailed_context(self, lead_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Context plus per-rule condition results, for inspection."""
        now = now or datetime.utcnow()
        async with self.database.session() as session:
            lead = await LeadRepository(session).get_by_id(lead_id)
            if lead is None:
                return None
            messages = await MessageRepository(session).get_transcript(lead_id)
        context = self.build_context(lead, messages, now)

        rules = []
        for rule in self.rules:
            results = [
                {
                    "metric": c.metric.value,
                    "operator": c.op.value,
                    "threshold": c.threshold,
                    "value": context.value(c.metric),
                    "met": c.evaluate(context),
                }
                for c in rule.conditions
            ]
            met = sum(1 for r in results if r["met"])
            rules.append({
                "trigger_type": rule.trigger_type.value,
                "conditions": results,
                "fraction_met": round(met / len(results), 3) if results else 0.0,
            })
        return {"lead_id": lead_id, "context": context.to_dict(), "rules": rules}

    async def get_pending_triggers(self, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.database.session() as session:
            rows = await TriggerRepository(session).get_pending(limit)
            return [
                {
                    "id": t.id,
                    "lead_id": t.lead_id,
                    "trigger_type": t.trigger_type,
                    "urgency_level": t.urgency_level,
                    "confidence": t.confidence,
                    "recommended_action": t.recommended_action,
                    "context": t.context,
                    "detected_at": t.detected_at.isoformat() if t.detected_at else None,
                }
                for t in rows
            ]

    async def mark_trigger_processed(self, trigger_id: str) -> bool:
        async with self.database.session() as session:
            updated = await TriggerRepository(session).mark_processed(trigger_id)
        if updated:
            logger.info(f"Trigger {trigger_id} marked processed")
        return updated
