"""
Predictive Scorer for the Lead Engagement Engine.

Heuristic conversion probability, churn risk, predicted value and optimal
contact time for a lead, plus the automated decisions derived from them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from database.models import Lead, Message
from database.repositories import LeadRepository, LearningRepository, MessageRepository
from database.session import Database

logger = logging.getLogger(__name__)


class DecisionType(Enum):
    HUMAN_HANDOFF = "human_handoff"
    CAMPAIGN_TRIGGER = "campaign_trigger"
    MESSAGE_TIMING = "message_timing"


@dataclass
class PredictionFactors:
    """Engagement factors feeding the heuristics."""
    response_rate: float = 0.0
    avg_response_hours: float = 24.0
    interest_specificity: float = 0.0  # 0-1
    sentiment: float = 0.5  # 0-1
    engagement_trend: float = 0.0
    days_since_last_reply: float = 999.0
    lead_age_days: float = 0.0
    message_count: int = 0
    inbound_last_week: int = 0
    success_similarity: float = 0.5  # 0-1
    has_success_sample: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response_rate": round(self.response_rate, 3),
            "avg_response_hours": round(self.avg_response_hours, 2),
            "interest_specificity": round(self.interest_specificity, 2),
            "sentiment": round(self.sentiment, 2),
            "engagement_trend": round(self.engagement_trend, 2),
            "days_since_last_reply": round(self.days_since_last_reply, 2),
            "lead_age_days": round(self.lead_age_days, 2),
            "message_count": self.message_count,
            "inbound_last_week": self.inbound_last_week,
            "success_similarity": round(self.success_similarity, 2),
        }


@dataclass
class Prediction:
    """Ephemeral prediction for one lead."""
    lead_id: str
    conversion_probability: float
    churn_risk: float
    predicted_value: float
    optimal_contact_time: datetime
    recommended_actions: List[str] = field(default_factory=list)
    confidence_score: float = 0.0
    factors: Optional[PredictionFactors] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "lead_id": self.lead_id,
            "conversion_probability": self.conversion_probability,
            "churn_risk": self.churn_risk,
            "predicted_value": self.predicted_value,
            "optimal_contact_time": self.optimal_contact_time.isoformat(),
            "recommended_actions": self.recommended_actions,
            "confidence_score": self.confidence_score,
            "factors": self.factors.to_dict() if self.factors else {},
        }


@dataclass
class AutomatedDecision:
    lead_id: str
    decision_type: DecisionType
    reason: str
    confidence: float
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "decision_type": self.decision_type.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "payload": self.payload,
        }


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class PredictiveScorer:
    """
    Scores leads.

    Conversion probability (base 0.3):
    - Response rate > 0.7: +0.3, > 0.4: +0.2
    - Lead created within 7 days: +0.2
    - More than 10 messages: +0.1
    - Interest specificity: +0.1 * specificity
    - Average reply under 2 hours: +0.1
    - Sentiment below 0.4: -0.1
    - Similarity to converted leads: +0.2 * (similarity - 0.5)

    Churn risk (base 0.2):
    - More than 7 days since last reply: +0.3, more than 14 days: another +0.3
    - No inbound message in the last week: +0.2
    - Response rate below 0.2: +0.1
    """

    CONVERSION_BASE = 0.3
    CHURN_BASE = 0.2
    CONTACT_WINDOW_START = 9
    CONTACT_WINDOW_END = 18

    HANDOFF_THRESHOLD = 0.7
    CAMPAIGN_THRESHOLD = 0.6
    DECISION_MIN_CONFIDENCE = 0.5

    POSITIVE_WORDS = ["great", "good", "excellent", "interested", "love", "perfect", "thanks", "awesome"]
    NEGATIVE_WORDS = ["bad", "terrible", "expensive", "stop", "never", "unhappy", "problem", "not interested"]

    def __init__(
        self,
        database: Optional[Database] = None,
        base_vehicle_price: float = 35000.0,
        timezone: str = "America/Chicago",
    ):
        self.database = database
        self.base_vehicle_price = base_vehicle_price
        self.tz = ZoneInfo(timezone)

    # ── Factors ───────────────────────────────────────

    def compute_factors(
        self,
        lead: Lead,
        messages: Sequence[Message],
        now: datetime,
        success_profiles: Optional[List[PredictionFactors]] = None,
    ) -> PredictionFactors:
        ordered = sorted(messages, key=lambda m: m.sent_at)
        inbound = [m for m in ordered if m.direction == "in"]
        outbound = [m for m in ordered if m.direction == "out"]

        latencies: List[float] = []
        last_out: Optional[datetime] = None
        for m in ordered:
            if m.direction == "out":
                last_out = m.sent_at
            elif last_out is not None:
                latencies.append((m.sent_at - last_out).total_seconds() / 3600)
                last_out = None

        week_ago = now - timedelta(days=7)
        two_weeks_ago = now - timedelta(days=14)
        recent = sum(1 for m in inbound if m.sent_at >= week_ago)
        previous = sum(1 for m in inbound if two_weeks_ago <= m.sent_at < week_ago)
        last_reply = inbound[-1].sent_at if inbound else None

        specificity = 0.0
        if lead.vehicle_make:
            specificity += 0.4
        if lead.vehicle_model:
            specificity += 0.4
        if lead.vehicle_year:
            specificity += 0.2
        if specificity == 0.0 and lead.vehicle_interest:
            specificity = 0.2

        factors = PredictionFactors(
            response_rate=len(inbound) / max(len(outbound), 1),
            avg_response_hours=sum(latencies) / len(latencies) if latencies else 24.0,
            interest_specificity=_clamp(specificity),
            sentiment=self._sentiment(" ".join(m.body.lower() for m in inbound)),
            engagement_trend=(recent - previous) / previous if previous else float(recent),
            days_since_last_reply=(now - last_reply).total_seconds() / 86400 if last_reply else 999.0,
            lead_age_days=(now - (lead.created_at or now)).total_seconds() / 86400,
            message_count=len(ordered),
            inbound_last_week=recent,
        )
        if success_profiles:
            factors.has_success_sample = True
            factors.success_similarity = self._similarity(factors, success_profiles)
        return factors

    def _sentiment(self, text: str) -> float:
        if not text:
            return 0.5
        score = 0.5
        # Negative phrases are removed before the positive scan ("not interested")
        for word in self.NEGATIVE_WORDS:
            score -= 0.15 * text.count(word)
            text = text.replace(word, " ")
        score += 0.1 * sum(text.count(w) for w in self.POSITIVE_WORDS)
        return _clamp(score)

    @staticmethod
    def _similarity(factors: PredictionFactors, profiles: List[PredictionFactors]) -> float:
        """Mean closeness to converted leads on rate, specificity and sentiment."""
        scores = []
        for p in profiles:
            diff = (
                abs(min(factors.response_rate, 1.0) - min(p.response_rate, 1.0))
                + abs(factors.interest_specificity - p.interest_specificity)
                + abs(factors.sentiment - p.sentiment)
            ) / 3
            scores.append(1 - diff)
        return _clamp(sum(scores) / len(scores))

    # ── Heuristics ────────────────────────────────────

    def conversion_probability(self, f: PredictionFactors) -> float:
        p = self.CONVERSION_BASE
        if f.response_rate > 0.7:
            p += 0.3
        elif f.response_rate > 0.4:
            p += 0.2
        if f.lead_age_days <= 7:
            p += 0.2
        if f.message_count > 10:
            p += 0.1
        p += 0.1 * f.interest_specificity
        if f.avg_response_hours < 2:
            p += 0.1
        if f.sentiment < 0.4:
            p -= 0.1
        p += 0.2 * (f.success_similarity - 0.5)
        return round(_clamp(p), 3)

    def churn_risk(self, f: PredictionFactors) -> float:
        risk = self.CHURN_BASE
        if f.days_since_last_reply > 7:
            risk += 0.3
        if f.days_since_last_reply > 14:
            risk += 0.3
        if f.inbound_last_week == 0:
            risk += 0.2
        if f.response_rate < 0.2:
            risk += 0.1
        return round(_clamp(risk), 3)

    def predicted_value(self, f: PredictionFactors) -> float:
        engagement = 0.9 + 0.2 * _clamp(f.response_rate)
        sentiment = 0.9 + 0.2 * f.sentiment
        value = self.base_vehicle_price * (1 + 0.2 * f.interest_specificity) * engagement * sentiment
        return round(value, 2)

    def optimal_contact_time(self, f: PredictionFactors, now: datetime) -> datetime:
        """Offset graduated by recency, snapped into the 9:00-18:00 local window (returns naive UTC)."""
        if f.days_since_last_reply <= 1:
            offset = timedelta(hours=2)
        elif f.days_since_last_reply <= 3:
            offset = timedelta(hours=4)
        elif f.days_since_last_reply <= 7:
            offset = timedelta(days=1)
        else:
            offset = timedelta(days=2)
        return self.snap_to_window(now + offset)

    def snap_to_window(self, when_utc: datetime) -> datetime:
        local = when_utc.replace(tzinfo=ZoneInfo("UTC")).astimezone(self.tz)
        if local.hour < self.CONTACT_WINDOW_START:
            local = local.replace(hour=self.CONTACT_WINDOW_START, minute=0, second=0, microsecond=0)
        elif local.hour >= self.CONTACT_WINDOW_END:
            local = (local + timedelta(days=1)).replace(
                hour=self.CONTACT_WINDOW_START, minute=0, second=0, microsecond=0
            )
        return local.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)

    def confidence(self, f: PredictionFactors) -> float:
        c = 0.3 + min(0.1 * (f.message_count // 5), 0.5)
        if f.has_success_sample:
            c += 0.2
        return round(_clamp(c), 2)

    def predict_from_factors(self, lead_id: str, f: PredictionFactors, now: datetime) -> Prediction:
        conversion = self.conversion_probability(f)
        churn = self.churn_risk(f)

        actions: List[str] = []
        if conversion > 0.7:
            actions.append("Prioritize personal outreach from a sales manager")
        elif conversion > 0.5:
            actions.append("Offer a test drive appointment")
        if churn > 0.6:
            actions.append("Start a re-engagement sequence")
        elif churn > 0.4:
            actions.append("Send a value-add follow-up")
        if f.interest_specificity < 0.4:
            actions.append("Clarify vehicle preferences")
        if not actions:
            actions.append("Continue standard follow-up cadence")

        return Prediction(
            lead_id=lead_id,
            conversion_probability=conversion,
            churn_risk=churn,
            predicted_value=self.predicted_value(f),
            optimal_contact_time=self.optimal_contact_time(f, now),
            recommended_actions=actions,
            confidence_score=self.confidence(f),
            factors=f,
        )

    async def predict(self, lead_id: str, now: Optional[datetime] = None) -> Optional[Prediction]:
        """Load a lead and its conversation and score it."""
        if self.database is None:
            raise RuntimeError("PredictiveScorer.predict requires a database")
        now = now or datetime.utcnow()

        async with self.database.session() as session:
            lead = await LeadRepository(session).get_by_id(lead_id)
            if lead is None:
                return None
            messages = MessageRepository(session)
            transcript = await messages.get_transcript(lead_id)

            profiles: List[PredictionFactors] = []
            for converted_id in await LearningRepository(session).converted_lead_ids(limit=20):
                if converted_id == lead_id:
                    continue
                converted = await LeadRepository(session).get_by_id(converted_id)
                if converted is None:
                    continue
                profiles.append(self.compute_factors(converted, await messages.get_transcript(converted_id), now))

        factors = self.compute_factors(lead, transcript, now, success_profiles=profiles)
        prediction = self.predict_from_factors(lead_id, factors, now)
        logger.debug(
            f"Prediction for {lead_id}: conversion={prediction.conversion_probability} "
            f"churn={prediction.churn_risk} confidence={prediction.confidence_score}"
        )
        return prediction

    # ── Automated decisions ───────────────────────────

    def decide(self, prediction: Prediction) -> List[AutomatedDecision]:
        """Advisory decisions; nothing is returned for low-confidence predictions."""
        if prediction.confidence_score < self.DECISION_MIN_CONFIDENCE:
            return []

        decisions: List[AutomatedDecision] = []
        if prediction.conversion_probability > self.HANDOFF_THRESHOLD:
            decisions.append(AutomatedDecision(
                lead_id=prediction.lead_id,
                decision_type=DecisionType.HUMAN_HANDOFF,
                reason=f"High conversion probability ({prediction.conversion_probability:.0%})",
                confidence=prediction.confidence_score,
                payload={"predicted_value": prediction.predicted_value},
            ))
        if prediction.churn_risk > self.CAMPAIGN_THRESHOLD:
            decisions.append(AutomatedDecision(
                lead_id=prediction.lead_id,
                decision_type=DecisionType.CAMPAIGN_TRIGGER,
                reason=f"High churn risk ({prediction.churn_risk:.0%})",
                confidence=prediction.confidence_score,
                payload={"campaign": "re_engagement"},
            ))
        decisions.append(AutomatedDecision(
            lead_id=prediction.lead_id,
            decision_type=DecisionType.MESSAGE_TIMING,
            reason="Optimal contact time from engagement recency",
            confidence=prediction.confidence_score,
            payload={"send_at": prediction.optimal_contact_time.isoformat()},
        ))
        return decisions
