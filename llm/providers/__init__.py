"""
LLM providers used to write outbound lead messages.

Both expose a blocking ``generate(prompt, system, max_tokens, temperature) -> str``.
"""

from .bedrock import BedrockProvider
from .openai_provider import OpenAIProvider

__all__ = ["BedrockProvider", "OpenAIProvider"]
