"""Tests for the Learning Feedback Loop."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from database.models import CommunicationPattern, LearningOutcome, MessageAnalytics
from database.repositories import LearningRepository
from learning.feedback_loop import InsightType, LearningFeedbackLoop
from tests.conftest import NOW


@pytest.fixture
def loop(database):
    return LearningFeedbackLoop(database, batch_size=1000)


async def _one(database, model, **filters):
    async with database.session() as session:
        stmt = select(model)
        for name, value in filters.items():
            stmt = stmt.where(getattr(model, name) == value)
        return (await session.execute(stmt)).scalar_one()


# ── Ingestion ─────────────────────────────────────────

class TestIngestion:
    async def test_response_latency_recorded(self, loop, database):
        sent_at = NOW - timedelta(hours=1)
        await loop.emit("message_sent", "lead-1", {
            "message_id": "m-1", "template_id": "initial_contact", "sent_at": sent_at.isoformat(),
        })
        await loop.emit("response_received", "lead-1", {
            "body": "Yes, interested!", "received_at": (sent_at + timedelta(minutes=30)).isoformat(),
        })
        assert loop.pending == 2

        await loop.flush(NOW)

        assert loop.pending == 0
        row = await _one(database, MessageAnalytics, lead_id="lead-1")
        assert row.response_received is True
        assert row.response_time_minutes == pytest.approx(30.0)
        # 14:00 UTC is 09:00 in Chicago
        assert row.hour_of_day == 9

        pattern = await _one(database, CommunicationPattern, lead_id="lead-1")
        assert pattern.messages_sent == 1
        assert pattern.responses == 1
        assert pattern.avg_response_minutes == pytest.approx(30.0)
        assert pattern.avg_sentiment > 0.5

    async def test_reply_without_send(self, loop, database):
        await loop.emit("response_received", "lead-2", {"body": "hello", "received_at": NOW.isoformat()})
        await loop.flush(NOW)

        pattern = await _one(database, CommunicationPattern, lead_id="lead-2")
        assert pattern.responses == 1
        assert pattern.avg_response_minutes is None

    async def test_offset_timestamps_normalized(self, loop, database):
        await loop.emit("message_sent", "lead-4", {"message_id": "m-4", "sent_at": "2026-03-10T14:00:00Z"})
        await loop.emit("response_received", "lead-4", {"body": "Sure", "received_at": "2026-03-10T09:30:00-05:00"})

        await loop.flush(NOW)

        row = await _one(database, MessageAnalytics, lead_id="lead-4")
        assert row.sent_at.tzinfo is None
        assert row.response_received is True
        assert row.response_time_minutes == pytest.approx(30.0)

    async def test_auto_flush_at_batch_size(self, database):
        loop = LearningFeedbackLoop(database, batch_size=2)
        await loop.emit("message_sent", "lead-1", {"sent_at": NOW.isoformat()})
        assert loop.pending == 1
        await loop.emit("message_sent", "lead-1", {"sent_at": NOW.isoformat()})
        assert loop.pending == 0

    async def test_unknown_event_ignored(self, loop):
        await loop.emit("lead_teleported", "lead-1", {})
        assert loop.pending == 0

    async def test_trigger_stored_as_outcome(self, loop, database):
        await loop.emit("trigger_fired", "lead-3", {"trigger_type": "competitor_mention", "confidence": 1.0})
        await loop.flush(NOW)

        outcome = await _one(database, LearningOutcome, lead_id="lead-3")
        assert outcome.outcome_type == "trigger:competitor_mention"
        assert outcome.value == 1.0

    async def test_empty_flush(self, loop):
        assert await loop.flush(NOW) == []


# ── Classification ────────────────────────────────────

class TestClassification:
    def test_frequency_class(self):
        assert LearningFeedbackLoop.frequency_class(1, None, NOW) == "medium"
        assert LearningFeedbackLoop.frequency_class(4, NOW - timedelta(days=1), NOW) == "high"
        assert LearningFeedbackLoop.frequency_class(1, NOW - timedelta(days=5), NOW) == "low"

    def test_sentiment(self, loop):
        assert loop.sentiment("yes, interested") == pytest.approx(0.7)
        assert loop.sentiment("no thanks, too expensive") == pytest.approx(0.4)
        assert loop.sentiment("") == 0.5


# ── Analyses ──────────────────────────────────────────

class TestAnalyses:
    async def test_timing_insight(self, loop):
        sent_at = NOW - timedelta(days=1)  # 10:00 in Chicago
        for i in range(12):
            lead_id = f"lead-{i}"
            await loop.emit("message_sent", lead_id, {"template_id": "initial_contact", "sent_at": sent_at.isoformat()})
            await loop.emit("response_received", lead_id, {
                "body": "sure", "received_at": (sent_at + timedelta(minutes=30)).isoformat(),
            })

        insights = await loop.flush(NOW)

        assert len(insights) == 1
        timing = insights[0]
        assert timing.insight_type == InsightType.TIMING
        assert timing.details["optimal_hours"][0] == 10
        assert "10:00" in timing.recommendation

        stored = await loop.get_optimization_insights()
        assert stored[0]["type"] == "timing"
        assert stored[0]["details"]["samples"] == 12

    async def test_timing_needs_samples(self, loop):
        for i in range(5):
            await loop.emit("message_sent", f"lead-{i}", {"sent_at": (NOW - timedelta(hours=2)).isoformat()})
            await loop.emit("response_received", f"lead-{i}", {"body": "ok", "received_at": NOW.isoformat()})
        await loop.flush(NOW)
        assert await loop.analyze_timing(NOW) is None

    async def test_content_insight(self, loop, database):
        async with database.session() as session:
            repo = LearningRepository(session)
            for template_id, responses in (("tpl-a", 6), ("tpl-b", 2), ("tpl-c", 1)):
                for i in range(10):
                    await repo.add_analytics(
                        lead_id=f"{template_id}-{i}",
                        template_id=template_id,
                        sent_at=NOW - timedelta(days=2),
                        hour_of_day=10,
                        day_of_week=0,
                        response_received=i < responses,
                    )

        insight = await loop.analyze_content(NOW)

        assert insight.insight_type == InsightType.CONTENT
        assert insight.details["top_template"] == "tpl-a"
        assert insight.details["top_rate"] == pytest.approx(0.6)
        assert insight.details["average_rate"] == pytest.approx(0.3)

    async def test_content_needs_clear_leader(self, loop, database):
        async with database.session() as session:
            repo = LearningRepository(session)
            for template_id in ("tpl-a", "tpl-b", "tpl-c"):
                for i in range(4):
                    await repo.add_analytics(
                        lead_id=f"{template_id}-{i}", template_id=template_id, sent_at=NOW,
                        hour_of_day=10, day_of_week=0, response_received=i < 2,
                    )
        assert await loop.analyze_content(NOW) is None

    async def test_frequency_insight(self, loop, database):
        async with database.session() as session:
            for i in range(12):
                session.add(CommunicationPattern(
                    lead_id=f"high-{i}", messages_sent=4, responses=3, message_frequency="high",
                ))
            for i in range(10):
                session.add(CommunicationPattern(
                    lead_id=f"low-{i}", messages_sent=4, responses=1, message_frequency="low",
                ))

        insight = await loop.analyze_frequency(NOW)

        assert insight.insight_type == InsightType.FREQUENCY
        assert insight.details["high_rate"] == pytest.approx(0.75)
        assert insight.details["low_rate"] == pytest.approx(0.25)
        assert "higher" in insight.recommendation

    async def test_frequency_needs_patterns(self, loop, database):
        async with database.session() as session:
            for i in range(5):
                session.add(CommunicationPattern(lead_id=f"p-{i}", messages_sent=2, responses=2))
        assert await loop.analyze_frequency(NOW) is None
