"""
Message generation for the Lead Engagement Engine.

``generate(context) -> GeneratedMessage`` is the contract the scheduler
depends on. The LLM-backed generator raises GenerationFailure on errors or
empty output; the template generator is the deterministic fallback.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.settings import Settings
from scheduler.errors import GenerationFailure

from .prompt_templates import PromptTemplates, PromptType

logger = logging.getLogger(__name__)

MAX_SMS_CHARS = 320


@dataclass
class GeneratedMessage:
    message: str
    confidence: float
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "confidence": self.confidence, "reasoning": self.reasoning}


class MessageGenerator(ABC):
    """Text-generation collaborator."""

    @abstractmethod
    async def generate(self, context: Dict[str, Any]) -> GeneratedMessage:
        """Write an outbound message for the given generation context."""
        ...


def _trim_sms(text: str) -> str:
    text = text.strip().strip('"').strip()
    if len(text) <= MAX_SMS_CHARS:
        return text
    cut = text[:MAX_SMS_CHARS]
    end = max(cut.rfind(". "), cut.rfind("? "), cut.rfind("! "))
    return cut[:end + 1] if end > 0 else cut.rstrip()


class LLMMessageGenerator(MessageGenerator):
    """Generates messages through an OpenAI or Bedrock provider."""

    def __init__(self, provider: Any, dealership: str, salesperson: str):
        """
        Args:
            provider: Object with a blocking generate(prompt, system) -> str
            dealership: Dealership name for the prompt
            salesperson: Persona name for the prompt
        """
        self.provider = provider
        self.dealership = dealership
        self.salesperson = salesperson

    async def generate(self, context: Dict[str, Any]) -> GeneratedMessage:
        prompt_type = PromptTemplates.prompt_type_for(context.get("strategy"))
        system = PromptTemplates.get_system_prompt(prompt_type, self.dealership, self.salesperson)
        prompt = PromptTemplates.build_user_prompt(context)

        try:
            raw = await asyncio.to_thread(self.provider.generate, prompt, system)
        except Exception as e:
            raise GenerationFailure(f"LLM provider error: {e}", lead_id=context.get("lead_id")) from e

        text = _trim_sms(raw or "")
        if not text:
            raise GenerationFailure("LLM returned an empty message", lead_id=context.get("lead_id"))

        stage = (context.get("analysis") or {}).get("stage", "discovery")
        return GeneratedMessage(
            message=text,
            confidence=0.85 if len(raw.strip()) <= MAX_SMS_CHARS else 0.6,
            reasoning=f"{prompt_type.value} prompt at {stage} stage",
        )


class TemplateMessageGenerator(MessageGenerator):
    """Deterministic fallback templates."""

    TEMPLATES = {
        PromptType.INITIAL_CONTACT: (
            "Hi {first_name}, this is {salesperson} with {dealership}. I saw you were looking at "
            "the {vehicle}. Is that still the one you have your eye on?"
        ),
        PromptType.TAKEOVER_FOLLOWUP: (
            "Hi {first_name}, {salesperson} at {dealership} here. Thanks for your message! I want to "
            "make sure you get what you need on the {vehicle}. What's the best way I can help?"
        ),
        PromptType.GENERAL_FOLLOWUP: (
            "Hi {first_name}, {salesperson} from {dealership} checking in on the {vehicle}. "
            "Any questions I can answer for you?"
        ),
    }

    def __init__(self, dealership: str, salesperson: str):
        self.dealership = dealership
        self.salesperson = salesperson

    async def generate(self, context: Dict[str, Any]) -> GeneratedMessage:
        prompt_type = PromptTemplates.prompt_type_for(context.get("strategy"))
        template = self.TEMPLATES[prompt_type]
        message = template.format(
            first_name=context.get("first_name") or "there",
            vehicle=context.get("vehicle") or "vehicle you asked about",
            dealership=self.dealership,
            salesperson=self.salesperson,
        )
        if not message.strip():
            raise GenerationFailure("Template produced an empty message", lead_id=context.get("lead_id"))
        return GeneratedMessage(
            message=message,
            confidence=0.5,
            reasoning=f"template fallback ({prompt_type.value})",
        )


def build_generator(settings: Settings) -> MessageGenerator:
    """Create the configured generator; ``llm_provider=none`` uses templates only."""
    fallback = TemplateMessageGenerator(settings.dealership_name, settings.salesperson_name)
    provider: Optional[Any] = None

    if settings.is_openai and not settings.openai_api_key:
        logger.warning("LLM_PROVIDER=openai but OPENAI_API_KEY is not set")
    elif settings.is_openai:
        from .providers import OpenAIProvider
        provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            model_id=settings.openai_llm_model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
    elif settings.is_bedrock:
        from .providers import BedrockProvider
        provider = BedrockProvider(
            model_id=settings.bedrock_llm_model_id,
            region=settings.aws_region,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )

    if provider is None:
        logger.info("No LLM provider configured, using template messages")
        return fallback
    return LLMMessageGenerator(provider, settings.dealership_name, settings.salesperson_name)
