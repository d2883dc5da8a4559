"""
Conversation advancement flow.

Picks up leads whose latest message is an unanswered inbound reply older than
the advancement threshold, classifies what the conversation stalled on and
sends a templated nudge for that topic.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_

from database.models import AIStage, Direction, Lead
from database.repositories import LeadRepository, MessageRepository

from .dispatcher import DispatchResult
from .strategies import (
    EngagementStrategy, StrategyKind, StrategyResult, SweepContext, register_strategy,
)

logger = logging.getLogger(__name__)


class StalledTopic(Enum):
    FINANCE = "finance"
    PRICING = "pricing"
    FEATURE = "feature"
    STALLED = "stalled"


class AdvancementUrgency(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


TOPIC_KEYWORDS: List[Tuple[StalledTopic, List[str]]] = [
    (StalledTopic.FINANCE, [
        "interest rate", "rate", "apr", "financing", "finance", "credit", "loan",
        "down payment", "monthly payment", "pre-approv", "preapprov", "lease",
    ]),
    (StalledTopic.PRICING, [
        "price", "cost", "how much", "out the door", "otd", "msrp", "discount",
        "best deal", "trade-in", "trade in", "rebate",
    ]),
    (StalledTopic.FEATURE, [
        "tow", "awd", "4wd", "4x4", "mpg", "mileage", "feature", "seats", "third row",
        "color", "package", "engine", "specs", "trim", "interior", "sunroof",
    ]),
]

TRIM_LEXICON = [
    "High Country", "EX-L", "LTZ", "RST", "LT", "LS", "Premier", "XLT", "Lariat",
    "Platinum", "Limited", "SEL", "SE", "EX", "Touring", "Sport", "Denali", "SLT",
    "King Ranch", "Raptor", "TRD Pro", "TRD", "XLE", "LE", "Trail Boss", "ZR2",
]

_RATE_RE = re.compile(r"(\d{1,2}(?:\.\d{1,2})?)\s?%")
_ZIP_RE = re.compile(r"(?<![\d$,.])(\d{5})(?![\d,%])")
_TRIM_RE = re.compile(
    r"(?<![\w-])(" + "|".join(re.escape(t) for t in sorted(TRIM_LEXICON, key=len, reverse=True)) + r")(?![\w-])",
    re.IGNORECASE,
)
_TRIM_CANONICAL = {t.lower(): t for t in TRIM_LEXICON}


@dataclass
class ConversationHints:
    rate: Optional[str] = None
    zip_code: Optional[str] = None
    trim: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"rate": self.rate, "zip": self.zip_code, "trim": self.trim}


@dataclass
class AdvancementPlan:
    topic: StalledTopic
    variant: str
    urgency: AdvancementUrgency
    message: str
    hints: ConversationHints = field(default_factory=ConversationHints)
    reasoning: str = ""

    @property
    def template_id(self) -> str:
        return f"advancement:{self.topic.value}:{self.variant}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic.value,
            "variant": self.variant,
            "urgency": self.urgency.value,
            "message": self.message,
            "hints": self.hints.to_dict(),
            "reasoning": self.reasoning,
        }


def classify_topic(text: str) -> StalledTopic:
    lowered = text.lower()
    for topic, keywords in TOPIC_KEYWORDS:
        if any(re.search(r"\b" + re.escape(k), lowered) for k in keywords):
            return topic
    return StalledTopic.STALLED


def extract_hints(text: str) -> ConversationHints:
    hints = ConversationHints()
    rate = _RATE_RE.search(text)
    if rate:
        hints.rate = rate.group(1)
    zip_code = _ZIP_RE.search(text)
    if zip_code:
        hints.zip_code = zip_code.group(1)
    trim = _TRIM_RE.search(text)
    if trim:
        hints.trim = _TRIM_CANONICAL.get(trim.group(1).lower(), trim.group(1))
    return hints


def urgency_for(hours_since_inbound: float) -> AdvancementUrgency:
    if hours_since_inbound < 6:
        return AdvancementUrgency.LOW
    if hours_since_inbound < 72:
        return AdvancementUrgency.MEDIUM
    return AdvancementUrgency.HIGH


def finance_variant(hours_since_inbound: float) -> str:
    if hours_since_inbound < 2:
        return "immediate"
    if hours_since_inbound < 24:
        return "same_day"
    return "final_push"


def compose_advancement(
    first_name: Optional[str],
    vehicle: Optional[str],
    inbound_text: str,
    hours_since_inbound: float,
) -> AdvancementPlan:
    """Build the templated advancement message for the last unanswered reply."""
    name = first_name or "there"
    topic = classify_topic(inbound_text)
    hints = extract_hints(inbound_text)
    urgency = urgency_for(hours_since_inbound)

    vehicle_name = vehicle or "vehicle"
    if hints.trim and hints.trim.lower() not in vehicle_name.lower():
        vehicle_name = f"{vehicle_name} {hints.trim}" if vehicle else hints.trim
    zip_part = f" for the {hints.zip_code} area" if hints.zip_code else ""

    if topic == StalledTopic.FINANCE:
        variant = finance_variant(hours_since_inbound)
        rate_part = (
            f"You mentioned {hints.rate}%, and I'll see if we can match or beat it. " if hints.rate else ""
        )
        if variant == "immediate":
            message = (
                f"Hi {name}! Great question on financing the {vehicle_name}. {rate_part}"
                f"I can run a few payment options for you. What down payment did you have in mind?"
            )
        elif variant == "same_day":
            message = (
                f"Hi {name}, following up on financing for the {vehicle_name}. {rate_part}"
                f"Our finance team can work up rates{zip_part} today. Want me to get that started?"
            )
        else:
            message = (
                f"{name}, I don't want you to miss out on current rates for the {vehicle_name}. {rate_part}"
                f"Can I send over a quick pre-approval link?"
            )
    elif topic == StalledTopic.PRICING:
        variant = "numbers"
        message = (
            f"Hi {name}! I'm putting together the best numbers on the {vehicle_name}{zip_part}. "
            f"Would you like an out-the-door price sent over by text?"
        )
    elif topic == StalledTopic.FEATURE:
        variant = "details"
        message = (
            f"Hi {name}, I pulled the details on the {vehicle_name} you asked about. "
            f"Happy to walk you through the features in person. When works for a quick look?"
        )
    elif hours_since_inbound < 6:
        variant = "quick_followup"
        message = (
            f"Hi {name}! Just wanted to follow up on your interest in the {vehicle_name}. "
            f"Any questions I can help with?"
        )
    elif hours_since_inbound < 24:
        variant = "value_add"
        message = (
            f"Hi {name}! I wanted to share some great features of the {vehicle_name} that might interest you. "
            f"Would you like to know more about financing options?"
        )
    elif hours_since_inbound < 72:
        variant = "urgency_creator"
        message = (
            f"Hi {name}! The {vehicle_name} is popular right now. "
            f"Would you like to schedule a time to see it?"
        )
    else:
        variant = "reengagement"
        message = (
            f"Hi {name}! I wanted to check in about your {vehicle_name} search. "
            f"Are you still looking, or has your situation changed?"
        )

    return AdvancementPlan(
        topic=topic,
        variant=variant,
        urgency=urgency,
        message=" ".join(message.split()),
        hints=hints,
        reasoning=f"{topic.value} topic, {hours_since_inbound:.1f}h since reply",
    )


@dataclass
class AdvancementCandidate:
    lead: Lead
    last_inbound_id: str
    last_inbound_body: str
    last_inbound_at: datetime

    @property
    def lead_id(self) -> str:
        return self.lead.id


@register_strategy(StrategyKind.CONVERSATION_ADVANCEMENT)
class ConversationAdvancementStrategy(EngagementStrategy):

    async def due(self, ctx: SweepContext) -> List[AdvancementCandidate]:
        threshold = timedelta(hours=self.services.advancement_threshold_hours)
        candidates: List[AdvancementCandidate] = []
        async with self.services.database.session() as session:
            leads = await LeadRepository(session).list_advancement_candidates(ctx.now, self.services.lead_limit)
            messages = MessageRepository(session)
            for lead in leads:
                last = await messages.get_last_message(lead.id)
                if last is None or last.direction != Direction.IN.value:
                    continue
                if ctx.now - last.sent_at < threshold:
                    continue
                candidates.append(AdvancementCandidate(lead, last.id, last.body, last.sent_at))
        return candidates

    async def handle(
        self, candidate: AdvancementCandidate, ctx: SweepContext, result: StrategyResult
    ) -> Optional[DispatchResult]:
        lead = candidate.lead
        await self.claim(
            lead.id, ctx,
            Lead.pending_human_response.is_(False),
            or_(Lead.next_send_at.is_(None), Lead.next_send_at <= ctx.now),
        )
        final = {}
        try:
            hours = (ctx.now - candidate.last_inbound_at).total_seconds() / 3600
            plan = compose_advancement(lead.first_name, lead.vehicle_interest, candidate.last_inbound_body, hours)

            _, analysis = await self.services.analyze_lead(lead)

            sent = await self.services.dispatcher.dispatch(
                lead,
                plan.message,
                correlation_id=f"{lead.id}:{self.kind.value}:{candidate.last_inbound_id}",
                strategy=self.kind.value,
                now=ctx.now,
                template_id=plan.template_id,
            )
            final = {"ai_stage": AIStage.ENGAGED.value, "next_send_at": self.services.next_followup_at(ctx.now)}
            logger.info(
                f"Advanced lead {lead.id}: {plan.reasoning}, urgency {plan.urgency.value}, "
                f"stage {analysis.stage.value}, temperature {analysis.temperature}"
            )
            return sent
        finally:
            await self.release(lead.id, ctx, **final)
