"""Claude (Anthropic) LLM provider."""

from ..base import LLMAuthError, LLMError, LLMProvider, LLMRateLimitError


class ClaudeProvider(LLMProvider):
    """Anthropic Claude provider."""

    provider_name = "claude"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client=None,
        timeout: float = 30.0,
    ):
        self.model = model or "claude-haiku-4-5"

        if client:
            self.client = client
            return

        try:
            from anthropic import Anthropic
        except ImportError:
            raise LLMError("anthropic package not installed. Run: pip install anthropic")

        # no SDK-level retries: a failed call falls back to heuristics
        self.client = Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def _handle_error(self, e: Exception):
        from anthropic import APIError, AuthenticationError, RateLimitError

        if isinstance(e, AuthenticationError):
            raise LLMAuthError(f"Claude auth failed: {e}") from e
        if isinstance(e, RateLimitError):
            raise LLMRateLimitError(f"Claude rate limit: {e}") from e
        if isinstance(e, APIError):
            raise LLMError(f"Claude API error: {e}") from e
        raise LLMError(f"Claude error: {e}") from e

    def generate(
        self, messages: list[dict], system: str | None = None, max_tokens: int = 2000
    ) -> str:
        try:
            kwargs = {
                "model": self.model,
                "max_tokens": max_tokens,
                "messages": messages,
            }
            if system:
                kwargs["system"] = system

            response = self.client.messages.create(**kwargs)
            return response.content[0].text
        except Exception as e:
            self._handle_error(e)
