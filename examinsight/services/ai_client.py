"""
Language model clients for coaching commentary.
"""
import logging
from typing import Dict, List

from openai import OpenAI, OpenAIError

from ..core.errors import AIServiceError

logger = logging.getLogger(__name__)


class CoachModel:
    """Turns chat messages into commentary text. Raises AIServiceError on any failure."""

    name = "model"

    def generate(self, messages: List[Dict[str, str]]) -> str:
        raise NotImplementedError


class OpenAICoachModel(CoachModel):
    def __init__(self, api_key: str, model: str, temperature: float = 0.7, max_tokens: int = 800, timeout: float = 30.0):
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.name = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings) -> "OpenAICoachModel":
        return cls(
            api_key=settings.OPENAI_API_KEY.get_secret_value(),
            model=settings.OPENAI_MODEL,
            temperature=settings.OPENAI_TEMPERATURE,
            max_tokens=settings.OPENAI_MAX_TOKENS,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )

    def generate(self, messages):
        try:
            response = self.client.chat.completions.create(
                model=self.name,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            raise AIServiceError(f"OpenAI request failed: {e}") from e
        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            raise AIServiceError("OpenAI returned an empty completion")
        return text


class UnconfiguredCoachModel(CoachModel):
    """Used when no API key is configured; every call falls back to templated text."""

    name = "unconfigured"

    def generate(self, messages):
        raise AIServiceError("No language model configured")
