"""
Completion service boundary used by the command interpreter.

The interpreter only needs ``complete(prompt_text, context) -> raw text``;
LLMCompletionService adapts any BaseLLMProvider to that shape.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from .base_provider import BaseLLMProvider, LLMRequest

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You translate natural-language requests into shell commands.

Respond with ONLY a JSON array. Each element describes one command:
  {"command": "<program>", "args": ["<arg>", ...], "description": "<what it does>",
   "confidence": <0.0-1.0>, "riskLevel": "safe|low|medium|high|critical",
   "category": "file_management|process_management|package_management|git|development|system_info|network|text_processing|custom",
   "requiresElevation": false}

Rules:
- Prefer the simplest command that satisfies the request.
- Commands run in order; use several elements for multi-step tasks.
- Never chain with pipes, ';' or '&&'; emit separate elements instead.
- Rate anything that deletes, overwrites, kills processes or changes permissions as high or critical.
- If the request cannot be expressed as shell commands, respond with [] ."""


class CompletionService(ABC):
    """Prompt in, raw text out."""

    @abstractmethod
    def complete(self, prompt_text: str, context: Any = None) -> str:
        """
        Raises:
            ProviderError: If the service cannot be reached or returns nothing
        """


class LLMCompletionService(CompletionService):
    """Completion service backed by a BaseLLMProvider."""

    def __init__(self, provider: BaseLLMProvider, system_prompt: str = SYSTEM_PROMPT,
                 temperature: float = 0.1, max_tokens: Optional[int] = 1000):
        self.provider = provider
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    def complete(self, prompt_text: str, context: Any = None) -> str:
        response = self.provider.complete(LLMRequest(
            system_prompt=self.system_prompt,
            user_prompt=prompt_text,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        ))
        logger.debug(f"Completion from {response.provider} in {response.response_time:.2f}s "
                     f"({response.tokens_used} tokens)")
        return response.content
