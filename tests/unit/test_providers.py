"""
Unit tests for LLM provider system.

Tests the provider abstraction, the OpenAI-compatible provider, the
completion service adapter and provider construction from config.
"""

import pytest
from unittest.mock import Mock, patch
from shellwise.llm import (
    LLMRequest,
    LLMResponse,
    ProviderError,
    ProviderResponseError,
    LLMCompletionService,
    create_provider,
)
from shellwise.llm.providers.lm_studio_provider import LMStudioProvider


def _chat_response(content="ls -la", total_tokens=42, model="local-model"):
    response = Mock()
    response.choices = [Mock()]
    response.choices[0].message.content = content
    response.usage.total_tokens = total_tokens
    response.model = model
    return response


@pytest.mark.unit
@pytest.mark.providers
class TestBaseLLMProvider:
    """Tests for request/response structures."""

    def test_llm_request_defaults(self):
        request = LLMRequest(system_prompt="You are helpful", user_prompt="Hello")

        assert request.temperature == 0.1
        assert request.max_tokens == 1000
        assert request.model is None

    def test_llm_response_creation(self):
        response = LLMResponse(content="Test response", tokens_used=50, response_time=0.5,
                               model="test-model", provider="test")

        assert response.content == "Test response"
        assert response.provider == "test"


@pytest.mark.unit
@pytest.mark.providers
class TestLMStudioProvider:
    """Tests for the OpenAI-compatible provider."""

    @patch('shellwise.llm.providers.lm_studio_provider.OpenAI')
    def test_complete(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _chat_response()
        mock_openai_class.return_value = mock_client

        provider = LMStudioProvider(base_url="http://localhost:1234/v1/")
        response = provider.complete(LLMRequest(system_prompt="sys", user_prompt="list files"))

        assert response.content == "ls -la"
        assert response.tokens_used == 42
        assert response.provider == "lm_studio"
        assert provider.base_url == "http://localhost:1234/v1"

        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"][1] == {"role": "user", "content": "list files"}
        assert kwargs["max_tokens"] == 1000
        assert mock_openai_class.call_args.kwargs["api_key"] == "not-needed"

    @patch('shellwise.llm.providers.lm_studio_provider.OpenAI')
    def test_api_key_selects_openai(self, mock_openai_class):
        provider = LMStudioProvider(base_url="https://api.openai.com/v1", api_key="sk-test")

        assert provider.get_provider_name() == "openai"
        assert mock_openai_class.call_args.kwargs["api_key"] == "sk-test"

    @patch('shellwise.llm.providers.lm_studio_provider.OpenAI')
    def test_empty_content_raises(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _chat_response(content="")
        mock_openai_class.return_value = mock_client

        with pytest.raises(ProviderResponseError):
            LMStudioProvider().complete(LLMRequest(system_prompt="s", user_prompt="u"))

    @patch('shellwise.llm.providers.lm_studio_provider.OpenAI')
    def test_client_error_is_wrapped(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = RuntimeError("connection refused")
        mock_openai_class.return_value = mock_client

        with pytest.raises(ProviderError, match="connection refused"):
            LMStudioProvider().complete(LLMRequest(system_prompt="s", user_prompt="u"))

    @patch('shellwise.llm.providers.lm_studio_provider.httpx.get')
    @patch('shellwise.llm.providers.lm_studio_provider.OpenAI')
    def test_connection(self, mock_openai_class, mock_get):
        mock_get.return_value = Mock(status_code=200)

        assert LMStudioProvider().test_connection()
        assert mock_get.call_args.args[0] == "http://localhost:1234/v1/models"

        mock_get.side_effect = OSError("unreachable")
        assert not LMStudioProvider().test_connection()

    @patch('shellwise.llm.providers.lm_studio_provider.OpenAI')
    def test_available_models_fallback(self, mock_openai_class):
        mock_client = Mock()
        mock_client.models.list.side_effect = RuntimeError("no models endpoint")
        mock_openai_class.return_value = mock_client

        assert LMStudioProvider(model="qwen").get_available_models() == ["qwen"]


@pytest.mark.unit
@pytest.mark.providers
class TestCompletionService:
    """Tests for the provider-backed completion service."""

    def test_complete_returns_content(self):
        provider = Mock()
        provider.complete.return_value = LLMResponse(content="[]", tokens_used=3, response_time=0.1,
                                                     model="m", provider="lm_studio")
        service = LLMCompletionService(provider, system_prompt="sys", temperature=0.0)

        assert service.complete("find big files") == "[]"
        request = provider.complete.call_args.args[0]
        assert request.system_prompt == "sys"
        assert request.user_prompt == "find big files"
        assert request.temperature == 0.0

    def test_provider_errors_propagate(self):
        provider = Mock()
        provider.complete.side_effect = ProviderError("down")

        with pytest.raises(ProviderError):
            LLMCompletionService(provider).complete("anything")


@pytest.mark.unit
@pytest.mark.providers
class TestProviderConfig:
    """Tests for provider construction from the llm config section."""

    @pytest.mark.parametrize("provider_type", ["none", "disabled", ""])
    def test_disabled(self, provider_type):
        assert create_provider({"type": provider_type}) is None

    def test_unknown_type(self):
        assert create_provider({"type": "carrier-pigeon"}) is None

    @patch('shellwise.llm.providers.lm_studio_provider.OpenAI')
    def test_lm_studio(self, mock_openai_class):
        provider = create_provider({"base_url": "http://gpu:1234/v1", "model": "qwen"})

        assert isinstance(provider, LMStudioProvider)
        assert provider.base_url == "http://gpu:1234/v1"
        assert provider.default_model == "qwen"
