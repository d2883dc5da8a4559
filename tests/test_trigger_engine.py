"""Tests for the Behavioral Trigger Engine."""

from datetime import timedelta

import pytest

from database.repositories import MessageRepository
from engagement.trigger_engine import (
    _COMPARATORS, BehavioralTriggerEngine, Condition, Metric, Operator, TriggerContext, TriggerType,
)
from tests.conftest import NOW


@pytest.fixture
def trigger_engine(database):
    return BehavioralTriggerEngine(database)


# ── Conditions ────────────────────────────────────────

class TestCondition:
    def test_rejects_string_operator(self):
        with pytest.raises(ValueError):
            Condition(Metric.PRICE_INQUIRIES, "gt", 1)

    def test_rejects_string_metric(self):
        with pytest.raises(ValueError):
            Condition("price_inquiries", Operator.GT, 1)

    @pytest.mark.parametrize("op,threshold,expected", [
        (Operator.GT, 2, True),
        (Operator.GTE, 3, True),
        (Operator.LT, 3, False),
        (Operator.LTE, 3, True),
        (Operator.EQ, 3, True),
        (Operator.NEQ, 3, False),
    ])
    def test_operators(self, op, threshold, expected):
        context = TriggerContext(price_inquiries=3)
        assert Condition(Metric.PRICE_INQUIRIES, op, threshold).evaluate(context) is expected

    def test_every_operator_has_comparator(self):
        assert set(_COMPARATORS) == set(Operator)


# ── Rule evaluation ───────────────────────────────────

class TestRuleEvaluation:
    def test_competitor_mention_fires(self, trigger_engine):
        matches = trigger_engine.evaluate_rules("lead-1", TriggerContext(competitor_mentions=1))
        types = [m.trigger_type for m in matches]
        assert TriggerType.COMPETITOR_MENTION in types
        competitor = next(m for m in matches if m.trigger_type == TriggerType.COMPETITOR_MENTION)
        assert competitor.confidence == 1.0
        assert competitor.recommended_action == "competitive_response"

    def test_half_met_does_not_fire(self, trigger_engine):
        # price inquiries met, response rate not: 0.5 < 0.7
        matches = trigger_engine.evaluate_rules("lead-1", TriggerContext(price_inquiries=3, response_rate=0.2))
        assert TriggerType.HIGH_INTENT not in [m.trigger_type for m in matches]

    def test_high_intent_fires(self, trigger_engine):
        matches = trigger_engine.evaluate_rules("lead-1", TriggerContext(price_inquiries=3, response_rate=0.8))
        assert TriggerType.HIGH_INTENT in [m.trigger_type for m in matches]

    def test_quiet_lead_fires_nothing(self, trigger_engine):
        assert trigger_engine.evaluate_rules("lead-1", TriggerContext(days_since_last_reply=1)) == []


# ── Detection ─────────────────────────────────────────

class TestDetection:
    async def test_persists_and_emits(self, database, make_lead):
        events = []

        async def sink(event_type, lead_id, payload):
            events.append((event_type, lead_id, payload))

        engine = BehavioralTriggerEngine(database, event_sink=sink)
        lead = await make_lead()
        async with database.session() as session:
            await MessageRepository(session).add_inbound(
                lead.id, "Toyota quoted me less. I need it this week, asap", sent_at=NOW - timedelta(hours=1)
            )

        fired = await engine.detect_triggers(lead.id, now=NOW)
        types = {m.trigger_type for m in fired}
        assert TriggerType.COMPETITOR_MENTION in types
        assert TriggerType.URGENCY_SIGNAL in types
        assert all(m.trigger_id for m in fired)
        assert {e[0] for e in events} == {"trigger_fired"}

        pending = await engine.get_pending_triggers()
        assert len(pending) == len(fired)

        assert await engine.mark_trigger_processed(pending[0]["id"]) is True
        assert await engine.mark_trigger_processed(pending[0]["id"]) is False
        assert len(await engine.get_pending_triggers()) == len(fired) - 1

    async def test_refires_without_cooldown(self, database, make_lead):
        engine = BehavioralTriggerEngine(database)
        lead = await make_lead()
        async with database.session() as session:
            await MessageRepository(session).add_inbound(lead.id, "Ford has a better price", sent_at=NOW)

        first = await engine.detect_triggers(lead.id, now=NOW)
        second = await engine.detect_triggers(lead.id, now=NOW + timedelta(minutes=5))
        assert len(first) == len(second) > 0

    async def test_cooldown_suppresses_refire(self, database, make_lead):
        engine = BehavioralTriggerEngine(database, cooldown_hours=24)
        lead = await make_lead()
        async with database.session() as session:
            await MessageRepository(session).add_inbound(lead.id, "Ford has a better price", sent_at=NOW)

        assert await engine.detect_triggers(lead.id, now=NOW)
        assert await engine.detect_triggers(lead.id, now=NOW + timedelta(hours=1)) == []
        assert await engine.detect_triggers(lead.id, now=NOW + timedelta(hours=25))

    async def test_unknown_lead(self, trigger_engine):
        assert await trigger_engine.detect_triggers("missing", now=NOW) == []
        assert await trigger_engine.get_detailed_context("missing", now=NOW) is None

    async def test_detailed_context(self, trigger_engine, database, make_lead):
        lead = await make_lead()
        async with database.session() as session:
            await MessageRepository(session).add_inbound(lead.id, "How much is the monthly payment?", sent_at=NOW)

        detail = await trigger_engine.get_detailed_context(lead.id, now=NOW)
        assert detail["context"]["price_inquiries"] >= 2
        assert {r["trigger_type"] for r in detail["rules"]} == {t.value for t in TriggerType}
