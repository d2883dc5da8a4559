"""Tests for the Conversation Analyzer and advancement hint extraction."""

import pytest

from engagement.conversation_analyzer import (
    ConversationAnalyzer, ConversationStage, FeatureImportance, SignalType, TranscriptMessage, UseCase,
)
from scheduler.advancement import (
    AdvancementUrgency, StalledTopic, classify_topic, compose_advancement, extract_hints,
)


@pytest.fixture
def analyzer():
    return ConversationAnalyzer()


def _inbound(*bodies):
    return [TranscriptMessage(direction="in", body=b) for b in bodies]


# ── Vehicle interest ──────────────────────────────────

class TestVehicleInterest:
    def test_make_model_year(self, analyzer):
        interest = analyzer.extract_vehicle_interest("Looking at a 2023 Chevy Silverado")
        assert interest.make == "chevrolet"
        assert interest.model == "silverado"
        assert interest.year == 2023
        assert interest.confidence == pytest.approx(0.9)

    def test_model_implies_make(self, analyzer):
        interest = analyzer.extract_vehicle_interest("Do you have any Tahoes? I mean a tahoe")
        assert interest.make == "chevrolet"
        assert interest.model == "tahoe"

    def test_feature_importance(self, analyzer):
        interest = analyzer.extract_vehicle_interest("I need to tow a camper. Would like a sunroof too")
        features = {f.name: f.importance for f in interest.features}
        assert features["towing"] == FeatureImportance.HIGH
        assert features["technology"] == FeatureImportance.MEDIUM

    def test_use_case(self, analyzer):
        interest = analyzer.extract_vehicle_interest("It's for my construction business and job site work")
        assert interest.use_case == UseCase.WORK

    def test_empty_text(self, analyzer):
        interest = analyzer.extract_vehicle_interest("")
        assert interest.make is None
        assert interest.confidence == 0.0


# ── Buying signals ────────────────────────────────────

class TestBuyingSignals:
    def test_ready_to_buy(self, analyzer):
        signals = analyzer.detect_buying_signals("I'm ready to buy, where do I sign?")
        assert signals[0].signal_type == SignalType.READY_TO_BUY
        assert signals[0].strength >= 0.95

    def test_at_most_three(self, analyzer):
        text = (
            "I'm interested in the Tahoe, what's the best price? Not sure about it, "
            "tell me more about the features. Ready to buy today"
        )
        signals = analyzer.detect_buying_signals(text)
        assert len(signals) == 3
        strengths = [s.strength for s in signals]
        assert strengths == sorted(strengths, reverse=True)

    def test_no_text(self, analyzer):
        assert analyzer.detect_buying_signals("") == []


# ── Temperature and stage ─────────────────────────────

class TestAnalysis:
    def test_finance_question_adds_budget_bonus(self, analyzer):
        analysis = analyzer.analyze(_inbound("what's the interest rate on the LTZ"))
        assert analysis.budget_signal is True
        assert analysis.temperature_breakdown["budget"] == 10
        assert analysis.has_signal(SignalType.PRICE_SHOPPING)

        plain = analyzer.analyze(_inbound("what colors does it come in"))
        assert plain.temperature_breakdown["budget"] == 0

    def test_temperature_bounded(self, analyzer):
        analysis = analyzer.analyze(_inbound(
            "Ready to buy the 2024 Silverado today asap! Need to tow, want 4x4, crew cab, diesel. "
            "What's the best price and monthly payment? Where do I sign"
        ))
        assert 0 <= analysis.temperature <= 100
        assert analysis.temperature == 100

    def test_deterministic(self, analyzer):
        transcript = [
            TranscriptMessage(direction="out", body="Hi Sam, this is Finn. Still interested in the Equinox?"),
            TranscriptMessage(direction="in", body="Yes, how much is it out the door? I have a trade-in"),
        ]
        first = analyzer.analyze(transcript).to_dict()
        second = ConversationAnalyzer().analyze(transcript).to_dict()
        assert first == second

    def test_closing_stage(self, analyzer):
        analysis = analyzer.analyze(_inbound("Let's do it, I'll take it"))
        assert analysis.stage == ConversationStage.CLOSING

    def test_objection_stage(self, analyzer):
        analysis = analyzer.analyze(_inbound("Honestly that's too expensive for me"))
        assert analysis.stage == ConversationStage.OBJECTION_HANDLING

    def test_discovery_default(self, analyzer):
        analysis = analyzer.analyze(_inbound("hello"))
        assert analysis.stage == ConversationStage.DISCOVERY
        assert analysis.temperature == 50

    def test_latest_inbound_appended(self, analyzer):
        analysis = analyzer.analyze([], latest_inbound="I'll take it")
        assert analysis.stage == ConversationStage.CLOSING


# ── Discovery questions ───────────────────────────────

class TestDiscoveryQuestions:
    def test_skips_answered_topics(self, analyzer):
        questions = analyzer.select_discovery_questions("I want it this week", [])
        assert "When are you hoping to be in your new vehicle?" not in questions
        assert len(questions) == 2

    def test_skips_asked_topics(self, analyzer):
        questions = analyzer.select_discovery_questions("hi", ["What's your budget looking like?"])
        assert "What monthly payment range would feel comfortable for you?" not in questions

    def test_high_priority_first(self, analyzer):
        questions = analyzer.select_discovery_questions("hi", [])
        assert questions == [
            "When are you hoping to be in your new vehicle?",
            "What monthly payment range would feel comfortable for you?",
        ]


# ── Advancement composition ───────────────────────────

class TestAdvancementComposition:
    def test_trim_extracted(self):
        hints = extract_hints("what's the interest rate on the LTZ")
        assert hints.trim == "LTZ"

    def test_rate_and_zip(self):
        hints = extract_hints("My credit union offered 5.9% and I live in 78701")
        assert hints.rate == "5.9"
        assert hints.zip_code == "78701"

    def test_finance_topic(self):
        assert classify_topic("what's the interest rate on the LTZ") == StalledTopic.FINANCE
        assert classify_topic("how much is it out the door") == StalledTopic.PRICING
        assert classify_topic("can it tow 9000 lbs") == StalledTopic.FEATURE
        assert classify_topic("ok thanks") == StalledTopic.STALLED

    def test_finance_variants_by_age(self):
        text = "what's the interest rate on the LTZ"
        assert compose_advancement("Sam", "Silverado", text, 1).variant == "immediate"
        assert compose_advancement("Sam", "Silverado", text, 5).variant == "same_day"
        late = compose_advancement("Sam", "Silverado", text, 30)
        assert late.variant == "final_push"
        assert late.urgency == AdvancementUrgency.MEDIUM

    def test_message_mentions_trim(self):
        plan = compose_advancement("Sam", "Silverado", "what's the interest rate on the LTZ", 3)
        assert "Silverado LTZ" in plan.message
        assert plan.template_id == "advancement:finance:same_day"

    def test_stalled_reengagement(self):
        plan = compose_advancement(None, None, "ok", 100)
        assert plan.variant == "reengagement"
        assert plan.urgency == AdvancementUrgency.HIGH
        assert plan.message.startswith("Hi there!")
