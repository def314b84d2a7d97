"""Tests for LLM provider adapters."""

from unittest.mock import MagicMock

import pytest

from llm import LLMAuthError, LLMError, LLMRateLimitError
from llm.providers.claude import ClaudeProvider
from llm.providers.openai import OpenAIProvider


class TestClaudeProvider:
    def test_generate(self):
        mock_client = MagicMock()
        mock_resp = MagicMock()
        mock_resp.content = [MagicMock(text='{"action": "RELATED"}')]
        mock_client.messages.create.return_value = mock_resp

        provider = ClaudeProvider(client=mock_client)
        result = provider.generate(
            messages=[{"role": "user", "content": "compare"}],
            system="Classify",
            max_tokens=200,
        )

        assert result == '{"action": "RELATED"}'
        mock_client.messages.create.assert_called_once_with(
            model="claude-haiku-4-5",
            max_tokens=200,
            messages=[{"role": "user", "content": "compare"}],
            system="Classify",
        )

    def test_generate_no_system(self):
        mock_client = MagicMock()
        mock_client.messages.create.return_value = MagicMock(content=[MagicMock(text="ok")])

        provider = ClaudeProvider(client=mock_client)
        provider.generate(messages=[{"role": "user", "content": "hi"}])

        assert "system" not in mock_client.messages.create.call_args.kwargs

    def test_auth_error(self):
        from anthropic import AuthenticationError

        mock_client = MagicMock()
        mock_client.messages.create.side_effect = AuthenticationError(
            message="bad key", response=MagicMock(status_code=401), body={}
        )

        provider = ClaudeProvider(client=mock_client)
        with pytest.raises(LLMAuthError):
            provider.generate(messages=[{"role": "user", "content": "hi"}])

    def test_rate_limit_error(self):
        from anthropic import RateLimitError

        mock_client = MagicMock()
        mock_client.messages.create.side_effect = RateLimitError(
            message="rate limited", response=MagicMock(status_code=429), body={}
        )

        provider = ClaudeProvider(client=mock_client)
        with pytest.raises(LLMRateLimitError):
            provider.generate(messages=[{"role": "user", "content": "hi"}])

    def test_unexpected_error_wrapped(self):
        mock_client = MagicMock()
        mock_client.messages.create.side_effect = ValueError("boom")

        provider = ClaudeProvider(client=mock_client)
        with pytest.raises(LLMError, match="Claude error"):
            provider.generate(messages=[{"role": "user", "content": "hi"}])


class TestOpenAIProvider:
    def test_generate_prepends_system(self):
        mock_client = MagicMock()
        mock_resp = MagicMock()
        mock_resp.choices = [MagicMock(message=MagicMock(content="Condensed bulletin"))]
        mock_client.chat.completions.create.return_value = mock_resp

        provider = OpenAIProvider(client=mock_client)
        result = provider.generate(
            messages=[{"role": "user", "content": "condense"}],
            system="Be brief",
        )

        assert result == "Condensed bulletin"
        call_kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert call_kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
        assert call_kwargs["messages"][1] == {"role": "user", "content": "condense"}

    def test_generate_no_system(self):
        mock_client = MagicMock()
        mock_client.chat.completions.create.return_value = MagicMock(
            choices=[MagicMock(message=MagicMock(content="response"))]
        )

        provider = OpenAIProvider(client=mock_client)
        provider.generate(messages=[{"role": "user", "content": "hi"}])

        assert len(mock_client.chat.completions.create.call_args.kwargs["messages"]) == 1

    def test_none_content_becomes_empty(self):
        mock_client = MagicMock()
        mock_client.chat.completions.create.return_value = MagicMock(
            choices=[MagicMock(message=MagicMock(content=None))]
        )
        assert OpenAIProvider(client=mock_client).generate(messages=[]) == ""

    def test_error_wrapped(self):
        mock_client = MagicMock()
        mock_client.chat.completions.create.side_effect = RuntimeError("down")
        with pytest.raises(LLMError):
            OpenAIProvider(client=mock_client).generate(messages=[{"role": "user", "content": "hi"}])
