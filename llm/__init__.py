"""
Text generation for the Lead Engagement Engine.

This module handles:
- LLM provider abstraction (Bedrock, OpenAI)
- SMS prompt templates
- Message generation with template fallback
"""

from .message_generator import (
    GeneratedMessage,
    LLMMessageGenerator,
    MessageGenerator,
    TemplateMessageGenerator,
    build_generator,
)
from .prompt_templates import PromptTemplates, PromptType

__all__ = [
    "GeneratedMessage",
    "LLMMessageGenerator",
    "MessageGenerator",
    "TemplateMessageGenerator",
    "build_generator",
    "PromptTemplates",
    "PromptType",
]
