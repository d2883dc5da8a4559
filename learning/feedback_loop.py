"""
Learning Feedback Loop for the Lead Engagement Engine.

Collects engagement events in memory, writes them to the analytics tables in
batches and mines the history for advisory optimization insights:

- timing: which send hours get the fastest replies
- content: which templates outperform their peers
- frequency: whether high- or low-frequency cadences get more replies

Insights are persisted for a human or downstream process; nothing is
auto-applied.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from database.models import naive_utc
from database.repositories import LearningRepository
from database.session import Database

logger = logging.getLogger(__name__)


class LearningEventType(Enum):
    MESSAGE_SENT = "message_sent"
    RESPONSE_RECEIVED = "response_received"
    CONVERSION = "conversion"
    APPOINTMENT_BOOKED = "appointment_booked"
    TRIGGER_FIRED = "trigger_fired"


class InsightType(Enum):
    TIMING = "timing"
    CONTENT = "content"
    FREQUENCY = "frequency"
    TARGETING = "targeting"


@dataclass
class LearningEvent:
    event_type: LearningEventType
    lead_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Insight:
    insight_type: InsightType
    confidence: float
    impact: str
    recommendation: str
    expected_improvement: float
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.insight_type.value,
            "confidence": self.confidence,
            "impact": self.impact,
            "recommendation": self.recommendation,
            "expected_improvement": self.expected_improvement,
            "details": self.details,
        }


def _parse_ts(value: Any, default: datetime) -> datetime:
    if isinstance(value, datetime):
        return naive_utc(value)
    if isinstance(value, str):
        try:
            return naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            logger.warning(f"Unparseable event timestamp {value!r}")
    return default


class LearningFeedbackLoop:
    """
    Batched event ingestion plus three independent analyses.

    Thresholds:
    - timing needs >= 10 responded messages in 7 days and hours with >= 3 replies
    - content needs >= 3 templates and a leader above 1.2x the average rate
    - frequency needs >= 20 patterns and a high/low gap above 0.15
    """

    MIN_TIMING_SAMPLES = 10
    MIN_RESPONSES_PER_HOUR = 3
    MIN_TEMPLATES = 3
    CONTENT_LIFT = 1.2
    MIN_PATTERNS = 20
    FREQUENCY_GAP = 0.15

    POSITIVE_WORDS = ["great", "good", "yes", "interested", "love", "perfect", "thanks", "awesome", "sounds good"]
    NEGATIVE_WORDS = ["no", "not", "expensive", "stop", "never", "bad", "busy", "too much"]

    def __init__(self, database: Database, batch_size: int = 3, timezone: str = "America/Chicago"):
        self.database = database
        self.batch_size = batch_size
        self.tz = ZoneInfo(timezone)
        self._queue: List[LearningEvent] = []
        self._processing = False

    @property
    def pending(self) -> int:
        return len(self._queue)

    # ── Ingestion ─────────────────────────────────────

    async def emit(
        self,
        event_type: str,
        lead_id: str,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Event sink used by the scheduler and trigger engine."""
        try:
            kind = LearningEventType(event_type)
        except ValueError:
            logger.warning(f"Ignoring unknown learning event type {event_type!r}")
            return
        await self.record(LearningEvent(kind, lead_id, payload or {}, naive_utc(timestamp) or datetime.utcnow()))

    async def record(self, event: LearningEvent) -> None:
        self._queue.append(event)
        if len(self._queue) >= self.batch_size and not self._processing:
            await self.flush()

    async def flush(self, now: Optional[datetime] = None) -> List[Insight]:
        """Persist queued events, then run the analyses."""
        if self._processing:
            return []
        self._processing = True
        try:
            processed = 0
            while self._queue:
                batch, self._queue = self._queue, []
                for event in batch:
                    try:
                        await self._apply(event)
                        processed += 1
                    except Exception as e:
                        logger.error(f"Failed to record {event.event_type.value} for lead {event.lead_id}: {e}")
            if not processed:
                return []
            logger.info(f"Learning loop processed {processed} events")
            return await self.analyze(now)
        finally:
            self._processing = False

    async def _apply(self, event: LearningEvent) -> None:
        async with self.database.session() as session:
            repo = LearningRepository(session)
            if event.event_type == LearningEventType.MESSAGE_SENT:
                await self._on_message_sent(repo, event)
            elif event.event_type == LearningEventType.RESPONSE_RECEIVED:
                await self._on_response(repo, event)
            elif event.event_type == LearningEventType.TRIGGER_FIRED:
                await repo.add_outcome(
                    lead_id=event.lead_id,
                    outcome_type=f"trigger:{event.payload.get('trigger_type', 'unknown')}",
                    value=event.payload.get("confidence"),
                    details=event.payload,
                )
            else:
                await repo.add_outcome(
                    lead_id=event.lead_id,
                    outcome_type=event.event_type.value,
                    value=event.payload.get("value"),
                    details=event.payload,
                )

    def _local(self, when: datetime) -> datetime:
        return when.replace(tzinfo=ZoneInfo("UTC")).astimezone(self.tz)

    async def _on_message_sent(self, repo: LearningRepository, event: LearningEvent) -> None:
        sent_at = _parse_ts(event.payload.get("sent_at"), event.timestamp)
        local = self._local(sent_at)
        await repo.add_analytics(
            lead_id=event.lead_id,
            message_id=event.payload.get("message_id"),
            template_id=event.payload.get("template_id"),
            sent_at=sent_at,
            hour_of_day=local.hour,
            day_of_week=local.weekday(),
            ai_generated=bool(event.payload.get("ai_generated", True)),
        )

        pattern = await repo.get_or_create_pattern(event.lead_id)
        pattern.messages_sent = (pattern.messages_sent or 0) + 1
        if pattern.first_message_at is None:
            pattern.first_message_at = sent_at
        pattern.message_frequency = self.frequency_class(pattern.messages_sent, pattern.first_message_at, sent_at)
        pattern.updated_at = datetime.utcnow()

    async def _on_response(self, repo: LearningRepository, event: LearningEvent) -> None:
        received_at = _parse_ts(event.payload.get("received_at"), event.timestamp)
        latency: Optional[float] = None

        row = await repo.latest_unanswered(event.lead_id, before=received_at)
        if row is not None:
            latency = round((received_at - row.sent_at).total_seconds() / 60, 1)
            row.response_received = True
            row.response_time_minutes = latency

        pattern = await repo.get_or_create_pattern(event.lead_id)
        previous = pattern.responses or 0
        pattern.responses = previous + 1
        if latency is not None:
            pattern.avg_response_minutes = (
                latency if pattern.avg_response_minutes is None
                else (pattern.avg_response_minutes * previous + latency) / (previous + 1)
            )
        sentiment = self.sentiment(event.payload.get("body", ""))
        pattern.avg_sentiment = (
            sentiment if pattern.avg_sentiment is None
            else (pattern.avg_sentiment * previous + sentiment) / (previous + 1)
        )
        pattern.last_response_at = received_at
        pattern.updated_at = datetime.utcnow()

    @staticmethod
    def frequency_class(messages_sent: int, first_message_at: Optional[datetime], now: datetime) -> str:
        days = max((now - first_message_at).total_seconds() / 86400, 1.0) if first_message_at else 1.0
        per_day = messages_sent / days
        if per_day >= 2:
            return "high"
        if per_day >= 0.5:
            return "medium"
        return "low"

    def sentiment(self, text: str) -> float:
        lowered = (text or "").lower()
        score = 0.5
        score += 0.1 * sum(1 for w in self.POSITIVE_WORDS if w in lowered)
        score -= 0.1 * sum(1 for w in self.NEGATIVE_WORDS if f" {w} " in f" {lowered} ")
        return max(0.0, min(1.0, round(score, 2)))

    # ── Analyses ──────────────────────────────────────

    async def analyze(self, now: Optional[datetime] = None) -> List[Insight]:
        now = now or datetime.utcnow()
        insights: List[Insight] = []
        for analysis in (self.analyze_timing, self.analyze_content, self.analyze_frequency):
            try:
                insight = await analysis(now)
            except Exception as e:
                logger.error(f"{analysis.__name__} failed: {e}")
                continue
            if insight is not None:
                insights.append(insight)

        if insights:
            async with self.database.session() as session:
                repo = LearningRepository(session)
                for insight in insights:
                    await repo.add_insight(
                        insight_type=insight.insight_type.value,
                        confidence=insight.confidence,
                        impact=insight.impact,
                        recommendation=insight.recommendation,
                        expected_improvement=insight.expected_improvement,
                        details=insight.details,
                        created_at=now,
                    )
            logger.info(f"Generated {len(insights)} optimization insights")
        return insights

    async def analyze_timing(self, now: datetime) -> Optional[Insight]:
        async with self.database.session() as session:
            rows = await LearningRepository(session).responded_since(now - timedelta(days=7))
        if len(rows) < self.MIN_TIMING_SAMPLES:
            return None

        by_hour: Dict[int, List[float]] = {}
        for row in rows:
            by_hour.setdefault(row.hour_of_day, []).append(row.response_time_minutes)
        averages = {
            hour: sum(latencies) / len(latencies)
            for hour, latencies in by_hour.items()
            if len(latencies) >= self.MIN_RESPONSES_PER_HOUR
        }
        if not averages:
            return None

        best = sorted(averages.items(), key=lambda kv: (kv[1], kv[0]))[:3]
        hours = [hour for hour, _ in best]
        return Insight(
            insight_type=InsightType.TIMING,
            confidence=0.8,
            impact="medium",
            recommendation="Schedule messages at " + ", ".join(f"{h:02d}:00" for h in hours) + " local time",
            expected_improvement=15.0,
            details={
                "optimal_hours": hours,
                "avg_response_minutes": {str(h): round(m, 1) for h, m in best},
                "samples": len(rows),
            },
        )

    async def analyze_content(self, now: datetime) -> Optional[Insight]:
        async with self.database.session() as session:
            stats = await LearningRepository(session).template_stats()
        if len(stats) < self.MIN_TEMPLATES:
            return None

        rates = {s["template_id"]: s["responses"] / s["sent"] for s in stats if s["sent"]}
        if not rates:
            return None
        average = sum(rates.values()) / len(rates)
        top_id, top_rate = max(rates.items(), key=lambda kv: (kv[1], kv[0]))
        if average <= 0 or top_rate <= self.CONTENT_LIFT * average:
            return None

        return Insight(
            insight_type=InsightType.CONTENT,
            confidence=0.9,
            impact="high",
            recommendation=f"Use template '{top_id}' more often: {top_rate:.0%} response rate vs {average:.0%} average",
            expected_improvement=25.0,
            details={"top_template": top_id, "top_rate": round(top_rate, 3), "average_rate": round(average, 3)},
        )

    async def analyze_frequency(self, now: datetime) -> Optional[Insight]:
        async with self.database.session() as session:
            patterns = await LearningRepository(session).list_patterns(limit=1000)
        if len(patterns) < self.MIN_PATTERNS:
            return None

        def cohort_rate(frequency: str) -> Optional[float]:
            cohort = [p for p in patterns if p.message_frequency == frequency and p.messages_sent]
            if not cohort:
                return None
            return sum(min(p.responses / p.messages_sent, 1.0) for p in cohort) / len(cohort)

        high, low = cohort_rate("high"), cohort_rate("low")
        if high is None or low is None:
            return None
        gap = high - low
        if abs(gap) <= self.FREQUENCY_GAP:
            return None

        better = "higher" if gap > 0 else "lower"
        return Insight(
            insight_type=InsightType.FREQUENCY,
            confidence=0.7,
            impact="medium",
            recommendation=f"Shift toward {better} message frequency: high {high:.0%} vs low {low:.0%} response rate",
            expected_improvement=round(abs(gap) * 100, 1),
            details={"high_rate": round(high, 3), "low_rate": round(low, 3), "patterns": len(patterns)},
        )

    # ── Queries ───────────────────────────────────────

    async def get_optimization_insights(self, limit: int = 10) -> List[Dict[str, Any]]:
        async with self.database.session() as session:
            rows = await LearningRepository(session).list_insights(limit)
            return [
                {
                    "id": r.id,
                    "type": r.insight_type,
                    "confidence": r.confidence,
                    "impact": r.impact,
                    "recommendation": r.recommendation,
                    "expected_improvement": r.expected_improvement,
                    "details": r.details,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in rows
            ]
