"""Tests for outbound message generation."""

import pytest

from llm.message_generator import (
    MAX_SMS_CHARS, LLMMessageGenerator, TemplateMessageGenerator, build_generator,
)
from llm.prompt_templates import PromptTemplates, PromptType
from scheduler.errors import GenerationFailure


class StubProvider:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def generate(self, prompt, system=None):
        self.calls.append((prompt, system))
        if self.error:
            raise self.error
        return self.reply


CONTEXT = {
    "lead_id": "lead-1",
    "first_name": "Sam",
    "vehicle": "2024 Chevrolet Silverado",
    "strategy": "ai_takeover",
    "analysis": {
        "stage": "negotiation",
        "temperature": 72,
        "buying_signals": [{"type": "price_shopping"}],
        "discovery_questions": [],
    },
    "history": [
        {"direction": "out", "body": "Hi Sam, this is Finn."},
        {"direction": "in", "body": "What's the best price?"},
    ],
}


# ── Prompts ───────────────────────────────────────────

class TestPrompts:
    def test_prompt_type_for_strategy(self):
        assert PromptTemplates.prompt_type_for("initial_contact") == PromptType.INITIAL_CONTACT
        assert PromptTemplates.prompt_type_for("ai_takeover") == PromptType.TAKEOVER_FOLLOWUP
        assert PromptTemplates.prompt_type_for(None) == PromptType.GENERAL_FOLLOWUP

    def test_user_prompt(self):
        prompt = PromptTemplates.build_user_prompt(CONTEXT)
        assert "Customer: What's the best price?" in prompt
        assert "price_shopping" in prompt
        assert "Lead temperature (0-100): 72" in prompt

    def test_system_prompt_has_rules(self):
        system = PromptTemplates.get_system_prompt(PromptType.INITIAL_CONTACT, "Jason Pilger Chevrolet", "Finn")
        assert "You are Finn" in system
        assert "Never invent prices" in system


# ── LLM generator ─────────────────────────────────────

class TestLLMGenerator:
    async def test_generates(self):
        provider = StubProvider(reply='"Hi Sam! I can pull our best numbers on the Silverado. Want them by text?"')
        result = await LLMMessageGenerator(provider, "Jason Pilger Chevrolet", "Finn").generate(CONTEXT)
        assert result.message.startswith("Hi Sam!")
        assert not result.message.startswith('"')
        assert result.confidence == 0.85
        assert "negotiation" in result.reasoning
        assert "Finn" in provider.calls[0][1]

    async def test_long_reply_trimmed_at_sentence(self):
        provider = StubProvider(reply="Hi Sam! " + "The Silverado is a great truck. " * 20)
        result = await LLMMessageGenerator(provider, "Dealer", "Finn").generate(CONTEXT)
        assert len(result.message) <= MAX_SMS_CHARS
        assert result.message.endswith(".")
        assert result.confidence == 0.6

    async def test_provider_error(self):
        provider = StubProvider(error=RuntimeError("throttled"))
        with pytest.raises(GenerationFailure):
            await LLMMessageGenerator(provider, "Dealer", "Finn").generate(CONTEXT)

    async def test_empty_reply(self):
        with pytest.raises(GenerationFailure):
            await LLMMessageGenerator(StubProvider(reply="   "), "Dealer", "Finn").generate(CONTEXT)


# ── Templates ─────────────────────────────────────────

class TestTemplateGenerator:
    async def test_takeover_template(self):
        result = await TemplateMessageGenerator("Jason Pilger Chevrolet", "Finn").generate(CONTEXT)
        assert result.message.startswith("Hi Sam, Finn at Jason Pilger Chevrolet")
        assert "template fallback" in result.reasoning

    async def test_missing_fields(self):
        result = await TemplateMessageGenerator("Dealer", "Finn").generate({"strategy": "initial_contact"})
        assert result.message.startswith("Hi there")

    def test_build_without_provider(self, settings):
        assert isinstance(build_generator(settings), TemplateMessageGenerator)

    def test_build_openai_without_key(self, settings):
        configured = settings.model_copy(update={"llm_provider": "openai", "openai_api_key": None})
        assert isinstance(build_generator(configured), TemplateMessageGenerator)
