from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMError(Exception):
    """Transport or API failure talking to the model provider."""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        response_schema: Optional[dict] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate a response. With `response_schema` the output must be JSON matching it."""
        pass
