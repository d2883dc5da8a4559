"""Tests for the Predictive Scorer."""

from datetime import datetime, timedelta

import pytest

from database.repositories import LearningRepository, MessageRepository
from engagement.predictive_scorer import DecisionType, PredictionFactors, PredictiveScorer
from tests.conftest import NOW


@pytest.fixture
def scorer():
    return PredictiveScorer(base_vehicle_price=40000.0, timezone="America/Chicago")


# ── Heuristics ────────────────────────────────────────

class TestHeuristics:
    def test_conversion_capped_at_one(self, scorer):
        factors = PredictionFactors(
            response_rate=0.8, lead_age_days=2, message_count=12,
            interest_specificity=1.0, avg_response_hours=1, sentiment=0.7,
        )
        assert scorer.conversion_probability(factors) == 1.0

    def test_conversion_baseline(self, scorer):
        assert scorer.conversion_probability(PredictionFactors(lead_age_days=30)) == pytest.approx(0.3)

    def test_negative_sentiment_penalty(self, scorer):
        neutral = scorer.conversion_probability(PredictionFactors(lead_age_days=30))
        negative = scorer.conversion_probability(PredictionFactors(lead_age_days=30, sentiment=0.2))
        assert negative == pytest.approx(neutral - 0.1)

    def test_churn_for_silent_lead(self, scorer):
        assert scorer.churn_risk(PredictionFactors()) == 1.0

    def test_churn_for_active_lead(self, scorer):
        factors = PredictionFactors(days_since_last_reply=0.5, inbound_last_week=2, response_rate=0.5)
        assert scorer.churn_risk(factors) == pytest.approx(0.2)

    def test_predicted_value_scales_with_specificity(self, scorer):
        vague = scorer.predicted_value(PredictionFactors(interest_specificity=0.0))
        specific = scorer.predicted_value(PredictionFactors(interest_specificity=1.0))
        assert specific > vague > 0

    def test_negated_interest_reads_negative(self, scorer):
        assert scorer._sentiment("not interested") == pytest.approx(0.35)
        assert scorer._sentiment("very interested") == pytest.approx(0.6)


# ── Contact time ──────────────────────────────────────

class TestContactTime:
    def test_recent_reply_two_hours(self, scorer):
        when = scorer.optimal_contact_time(PredictionFactors(days_since_last_reply=0.5), NOW)
        assert when == NOW + timedelta(hours=2)

    def test_stale_reply_two_days(self, scorer):
        when = scorer.optimal_contact_time(PredictionFactors(days_since_last_reply=10), NOW)
        assert when == NOW + timedelta(days=2)

    def test_evening_snaps_to_next_morning(self, scorer):
        # 21:00 CDT on March 9 -> 09:00 CDT on March 10
        assert scorer.snap_to_window(datetime(2026, 3, 10, 2, 0)) == datetime(2026, 3, 10, 14, 0)

    def test_early_morning_snaps_to_nine(self, scorer):
        # 06:00 CDT -> 09:00 CDT same day
        assert scorer.snap_to_window(datetime(2026, 3, 10, 11, 0)) == datetime(2026, 3, 10, 14, 0)


# ── Decisions ─────────────────────────────────────────

class TestDecisions:
    def test_low_confidence_yields_nothing(self, scorer):
        prediction = scorer.predict_from_factors("lead-1", PredictionFactors(message_count=2), NOW)
        assert prediction.confidence_score < 0.5
        assert scorer.decide(prediction) == []

    def test_hot_lead_handoff(self, scorer):
        factors = PredictionFactors(
            response_rate=0.9, lead_age_days=1, message_count=12, interest_specificity=1.0,
            avg_response_hours=0.5, days_since_last_reply=0.1, inbound_last_week=6,
        )
        prediction = scorer.predict_from_factors("lead-1", factors, NOW)
        types = [d.decision_type for d in scorer.decide(prediction)]
        assert DecisionType.HUMAN_HANDOFF in types
        assert DecisionType.CAMPAIGN_TRIGGER not in types
        assert types[-1] == DecisionType.MESSAGE_TIMING

    def test_cold_lead_campaign(self, scorer):
        prediction = scorer.predict_from_factors("lead-1", PredictionFactors(message_count=10, lead_age_days=30), NOW)
        types = [d.decision_type for d in scorer.decide(prediction)]
        assert DecisionType.CAMPAIGN_TRIGGER in types
        assert "Start a re-engagement sequence" in prediction.recommended_actions


# ── Database-backed prediction ────────────────────────

class TestPredict:
    async def test_unknown_lead(self, database):
        assert await PredictiveScorer(database).predict("missing", now=NOW) is None

    async def test_engaged_lead(self, database, make_lead):
        lead = await make_lead(vehicle_make="chevrolet", vehicle_model="silverado")
        async with database.session() as session:
            messages = MessageRepository(session)
            out = await messages.create_outbound(
                lead.id, "Hi Sam!", "+15125550000", f"{lead.id}:test:0", sent_at=NOW - timedelta(hours=3)
            )
            await messages.mark_sent(out.id, "SM1")
            await messages.add_inbound(lead.id, "Sounds great, interested!", sent_at=NOW - timedelta(hours=2))

        prediction = await PredictiveScorer(database).predict(lead.id, now=NOW)
        assert prediction.factors.response_rate == 1.0
        assert prediction.factors.avg_response_hours == pytest.approx(1.0)
        assert prediction.factors.interest_specificity == pytest.approx(0.8)
        assert prediction.conversion_probability > 0.5
        assert prediction.churn_risk < 0.5

    async def test_similarity_to_converted_leads_raises_confidence(self, database, make_lead):
        converted = await make_lead()
        lead = await make_lead()
        scorer = PredictiveScorer(database)

        before = await scorer.predict(lead.id, now=NOW)
        async with database.session() as session:
            await LearningRepository(session).add_outcome(lead_id=converted.id, outcome_type="conversion", value=1.0)
        after = await scorer.predict(lead.id, now=NOW)

        assert after.factors.has_success_sample is True
        assert after.confidence_score == pytest.approx(before.confidence_score + 0.2)
