"""
LLM Provider Configuration

Builds the completion provider from the ``llm`` section of the config file.
"""

import logging
from typing import Dict, Any, Optional

from shellwise.llm.base_provider import BaseLLMProvider
from shellwise.llm.providers import LMStudioProvider

logger = logging.getLogger(__name__)


def get_default_llm_config() -> Dict[str, Any]:
    """Get default configuration (local LM Studio)."""
    return {
        "type": "lm_studio",
        "base_url": "http://localhost:1234/v1",
        "model": "local-model",
        "timeout": 120,
        "api_key": None,
    }


def create_provider(config: Optional[Dict[str, Any]] = None) -> Optional[BaseLLMProvider]:
    """
    Create a provider from configuration.

    Args:
        config: ``llm`` config section (defaults when None)

    Returns:
        Instantiated provider, or None if the type is unknown or disabled
    """
    settings = get_default_llm_config()
    settings.update(config or {})
    provider_type = str(settings.get("type") or "").lower()

    if provider_type in ("", "none", "disabled"):
        logger.info("LLM provider disabled; interpreter will use pattern rules only")
        return None

    if provider_type not in ("lm_studio", "openai"):
        logger.error(f"Unknown provider type: {provider_type}")
        return None

    provider = LMStudioProvider(
        base_url=settings["base_url"],
        model=settings["model"],
        timeout=settings["timeout"],
        api_key=settings.get("api_key") or None
    )
    logger.info(f"LLM provider: {provider.get_provider_name()} at {provider.base_url}")
    return provider
