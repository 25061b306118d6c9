"""
Provider interface behind shellwise's completion service.

Providers are synchronous; the interpreter runs them in a worker thread.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List


@dataclass
class LLMRequest:
    """One chat completion: a system prompt and the user's prompt."""
    system_prompt: str
    user_prompt: str
    temperature: float = 0.1
    max_tokens: Optional[int] = 1000
    model: Optional[str] = None


@dataclass
class LLMResponse:
    content: str
    tokens_used: int
    response_time: float
    model: str
    provider: str


class ProviderError(Exception):
    """The provider could not produce a completion."""
    pass


class ProviderConnectionError(ProviderError):
    """The provider client could not be set up or reached."""
    pass


class ProviderResponseError(ProviderError):
    """The provider answered with no usable content."""
    pass


class BaseLLMProvider(ABC):
    """Chat completion backend used by LLMCompletionService."""

    name = "unknown"
    default_model: Optional[str] = None

    @abstractmethod
    def complete(self, request: LLMRequest) -> LLMResponse:
        """
        Raises:
            ProviderError: If the completion fails or comes back empty
        """

    @abstractmethod
    def test_connection(self) -> bool:
        """True if the endpoint answers."""

    @abstractmethod
    def get_available_models(self) -> List[str]:
        pass

    def get_provider_name(self) -> str:
        return self.name
