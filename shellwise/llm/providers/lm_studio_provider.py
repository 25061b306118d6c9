"""
LM Studio / OpenAI-compatible Provider for shellwise

Talks to any OpenAI-compatible chat completion endpoint (LM Studio by
default, OpenAI itself when given an API key).
"""

import time
import logging
from typing import List, Optional

import httpx
from openai import OpenAI

from shellwise.llm.base_provider import (
    BaseLLMProvider,
    LLMRequest,
    LLMResponse,
    ProviderError,
    ProviderConnectionError,
    ProviderResponseError
)

logger = logging.getLogger(__name__)


class LMStudioProvider(BaseLLMProvider):
    """
    OpenAI-compatible provider.

    LM Studio ignores the API key, so "not-needed" is sent unless one is
    configured.
    """

    def __init__(self, base_url: str = "http://localhost:1234/v1",
                 model: str = "local-model", timeout: int = 120,
                 api_key: Optional[str] = None):
        """
        Args:
            base_url: API endpoint
            model: Model identifier (LM Studio uses the loaded model)
            timeout: Request timeout in seconds
            api_key: API key, only needed for hosted endpoints
        """
        self.name = "openai" if api_key else "lm_studio"
        self.base_url = base_url.rstrip('/')
        self.default_model = model
        self.timeout = timeout
        self.api_key = api_key

        try:
            self.client = OpenAI(
                base_url=self.base_url,
                api_key=api_key or "not-needed",
                timeout=timeout
            )
        except Exception as e:
            raise ProviderConnectionError(f"Failed to initialize OpenAI client: {e}")

        logger.debug(f"{self.name} provider initialized: {self.base_url}")

    def complete(self, request: LLMRequest) -> LLMResponse:
        start_time = time.time()
        model = request.model or self.default_model

        completion_args = {
            "model": model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt}
            ],
            "temperature": request.temperature,
        }
        if request.max_tokens:
            completion_args["max_tokens"] = request.max_tokens

        try:
            response = self.client.chat.completions.create(**completion_args)
        except Exception as e:
            raise ProviderError(f"Completion failed: {e}")

        if not response.choices or not response.choices[0].message.content:
            raise ProviderResponseError("No content in completion response")

        response_time = time.time() - start_time
        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.debug(f"Completion from {self.base_url}: {response_time:.2f}s, {tokens_used} tokens")

        return LLMResponse(
            content=response.choices[0].message.content,
            tokens_used=tokens_used,
            response_time=response_time,
            model=response.model or model,
            provider=self.name,
        )

    def test_connection(self) -> bool:
        """Test the endpoint by listing its models."""
        try:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            response = httpx.get(f"{self.base_url}/models", headers=headers, timeout=5.0)
            return response.status_code == 200
        except Exception as e:
            logger.warning(f"Connection test to {self.base_url} failed: {e}")
            return False

    def get_available_models(self) -> List[str]:
        """Falls back to the configured model when the endpoint cannot list them."""
        try:
            return [model.id for model in self.client.models.list()]
        except Exception as e:
            logger.warning(f"Could not list models: {e}")
            return [self.default_model]
