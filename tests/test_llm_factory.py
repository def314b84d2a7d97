"""Tests for LLM factory and auto-detection."""

from unittest.mock import MagicMock, patch

import pytest

from llm import LLMError, create_llm_provider
from llm.factory import _auto_detect_provider, create_reasoning_provider


@pytest.fixture
def no_keys(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


class TestAutoDetection:
    def test_detects_anthropic_key(self, no_keys, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        assert _auto_detect_provider() == "claude"

    def test_detects_openai_key(self, no_keys, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert _auto_detect_provider() == "openai"

    def test_prefers_anthropic_when_multiple(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert _auto_detect_provider() == "claude"

    def test_explicit_key_prefix_wins(self, no_keys):
        assert _auto_detect_provider("sk-ant-abc") == "claude"
        assert _auto_detect_provider("sk-abc") == "openai"

    def test_no_keys_raises(self, no_keys):
        with pytest.raises(LLMError, match="No LLM API key found"):
            _auto_detect_provider()


class TestCreateProvider:
    def test_explicit_claude_with_client(self):
        mock_client = MagicMock()
        provider = create_llm_provider(provider="claude", client=mock_client)
        assert provider.provider_name == "claude"
        assert provider.client is mock_client

    def test_explicit_openai_with_client(self):
        mock_client = MagicMock()
        provider = create_llm_provider(provider="openai", client=mock_client)
        assert provider.provider_name == "openai"
        assert provider.client is mock_client

    def test_unknown_provider_raises(self):
        with pytest.raises(LLMError, match="Unknown provider"):
            create_llm_provider(provider="gemini", client=MagicMock())

    def test_auto_with_anthropic_key(self, no_keys, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        with patch("anthropic.Anthropic") as mock_cls:
            provider = create_llm_provider(timeout=12.0)
        assert provider.provider_name == "claude"
        assert mock_cls.call_args.kwargs["timeout"] == 12.0
        assert mock_cls.call_args.kwargs["max_retries"] == 0

    def test_custom_model(self):
        provider = create_llm_provider(provider="claude", client=MagicMock(), model="claude-sonnet-4-5")
        assert provider.model == "claude-sonnet-4-5"

    def test_default_models(self):
        mock_client = MagicMock()
        assert create_llm_provider(provider="claude", client=mock_client).model == "claude-haiku-4-5"
        assert create_llm_provider(provider="openai", client=mock_client).model == "gpt-4o-mini"


class TestReasoningProvider:
    def test_disabled_returns_none(self):
        assert create_reasoning_provider({"enabled": False, "provider": "claude"}) is None

    def test_missing_key_returns_none(self, no_keys):
        with patch("llm.factory.logger") as mock_logger:
            assert create_reasoning_provider({"enabled": True, "provider": "auto"}) is None
        assert mock_logger.warning.call_args[0][0] == "reasoning_provider_unavailable"

    def test_enabled_builds_provider(self, no_keys):
        with patch("openai.OpenAI"):
            provider = create_reasoning_provider(
                {"enabled": True, "provider": "openai", "api_key": "sk-test", "model": "gpt-4o"}
            )
        assert provider.provider_name == "openai"
        assert provider.model == "gpt-4o"
