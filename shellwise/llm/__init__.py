"""
LLM integration for shellwise: the completion service the interpreter
falls back to when no pattern rule matches.
"""

from .base_provider import (
    BaseLLMProvider, LLMRequest, LLMResponse,
    ProviderError, ProviderConnectionError, ProviderResponseError,
)
from .completion_service import CompletionService, LLMCompletionService
from .provider_config import create_provider, get_default_llm_config

__all__ = [
    'BaseLLMProvider',
    'LLMRequest',
    'LLMResponse',
    'ProviderError',
    'ProviderConnectionError',
    'ProviderResponseError',
    'CompletionService',
    'LLMCompletionService',
    'create_provider',
    'get_default_llm_config',
]
