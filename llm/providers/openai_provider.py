"""
OpenAI LLM Provider.
"""

import logging
from typing import Optional

from openai import OpenAI

logger = logging.getLogger(__name__)


class OpenAIProvider:
    """
    OpenAI chat completions provider for short outbound texts.
    """

    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_id: str = DEFAULT_MODEL,
        max_tokens: int = 200,
        temperature: float = 0.4
    ):
        """
        Args:
            api_key: OpenAI API key (falls back to OPENAI_API_KEY)
            model_id: Model ID
            max_tokens: Maximum tokens per message
            temperature: Generation temperature
        """
        self._client = OpenAI(api_key=api_key) if api_key else OpenAI()
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.temperature = temperature

        logger.info(f"OpenAI provider initialized: {model_id}")

    def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> str:
        """
        Generate a completion. Returns "" when the model returns no content.

        Raises:
            Any error from the OpenAI client, after logging it
        """
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self._client.chat.completions.create(
                model=self.model_id,
                messages=messages,
                max_tokens=max_tokens or self.max_tokens,
                temperature=temperature if temperature is not None else self.temperature
            )
        except Exception as e:
            logger.error(f"OpenAI generation failed: {e}")
            raise

        content = response.choices[0].message.content if response.choices else None
        return (content or "").strip()
