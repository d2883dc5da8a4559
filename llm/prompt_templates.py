"""
Prompt Templates for the Lead Engagement Engine.

SMS prompts for AI-generated outreach to dealership leads.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class PromptType(Enum):
    """Types of outbound prompts."""
    INITIAL_CONTACT = "initial_contact"
    TAKEOVER_FOLLOWUP = "takeover_followup"
    GENERAL_FOLLOWUP = "general_followup"


class PromptTemplates:
    """
    Manages prompt templates for outbound SMS.

    Every system prompt shares the SMS rules block: short, one question,
    no invented prices or inventory.
    """

    SMS_RULES = """Rules:
- Write ONE text message under 300 characters
- Sound like a real person, friendly and professional
- Ask at most one question
- Never invent prices, rates, incentives or stock availability
- Do not use emojis or hashtags
- Return only the message text"""

    SYSTEM_PROMPTS = {
        PromptType.INITIAL_CONTACT: """You are {salesperson}, a salesperson at {dealership}, texting a new lead for the first time.

Your goals:
1. Introduce yourself and the dealership
2. Reference the vehicle they are interested in
3. Invite a reply with a simple question

{rules}""",

        PromptType.TAKEOVER_FOLLOWUP: """You are {salesperson}, a salesperson at {dealership}. The customer replied a little while ago and is still waiting for an answer.

Your goals:
1. Acknowledge their last message directly
2. Answer or move the conversation forward
3. Offer a next step (details, appointment, test drive)

{rules}""",

        PromptType.GENERAL_FOLLOWUP: """You are {salesperson}, a salesperson at {dealership}, following up with a lead by text.

{rules}""",
    }

    USER_TEMPLATE = """Customer first name: {first_name}
Vehicle of interest: {vehicle}
Conversation stage: {stage}
Lead temperature (0-100): {temperature}
Detected buying signals: {signals}
Suggested discovery questions: {questions}

Recent conversation:
{history}

Write the next text message."""

    @classmethod
    def get_system_prompt(
        cls,
        prompt_type: PromptType,
        dealership: str,
        salesperson: str,
    ) -> str:
        prompt = cls.SYSTEM_PROMPTS.get(prompt_type, cls.SYSTEM_PROMPTS[PromptType.GENERAL_FOLLOWUP])
        return prompt.format(dealership=dealership, salesperson=salesperson, rules=cls.SMS_RULES)

    @classmethod
    def build_user_prompt(cls, context: Dict[str, Any], history_limit: int = 8) -> str:
        """
        Build the user prompt from a generation context.

        Args:
            context: Generation context (lead fields, analysis dict, history)
            history_limit: Number of recent messages to include

        Returns:
            Formatted prompt
        """
        analysis = context.get("analysis") or {}
        history: List[Dict[str, str]] = context.get("history") or []
        lines = [
            f"{'Customer' if m.get('direction') == 'in' else 'Sales'}: {m.get('body', '')}"
            for m in history[-history_limit:]
        ]
        signals = ", ".join(s["type"] for s in analysis.get("buying_signals", [])) or "none"
        questions = " | ".join(analysis.get("discovery_questions", [])) or "none"
        return cls.USER_TEMPLATE.format(
            first_name=context.get("first_name") or "there",
            vehicle=context.get("vehicle") or "a new vehicle",
            stage=analysis.get("stage", "discovery"),
            temperature=analysis.get("temperature", 50),
            signals=signals,
            questions=questions,
            history="\n".join(lines) if lines else "(no messages yet)",
        )

    @classmethod
    def prompt_type_for(cls, strategy: Optional[str]) -> PromptType:
        mapping = {
            "initial_contact": PromptType.INITIAL_CONTACT,
            "ai_takeover": PromptType.TAKEOVER_FOLLOWUP,
        }
        return mapping.get(strategy or "", PromptType.GENERAL_FOLLOWUP)
