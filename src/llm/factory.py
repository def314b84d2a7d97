"""LLM provider factory with auto-detection."""

import os

import structlog

from .base import LLMError, LLMProvider

_PROVIDER_ENV_KEYS = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

_AUTO_DETECT_ORDER = ["claude", "openai"]

logger = structlog.get_logger()


def create_llm_provider(
    provider: str | None = None,
    api_key: str | None = None,
    model: str | None = None,
    client=None,
    timeout: float = 30.0,
) -> LLMProvider:
    """Create an LLM provider instance.

    Args:
        provider: "claude", "openai", "auto", or None (auto-detect)
        api_key: Explicit API key (overrides env var)
        model: Model name (None = provider default)
        client: Pre-built SDK client for testing/DI
        timeout: Per-request timeout in seconds

    Returns:
        LLMProvider instance
    """
    resolved = provider or "auto"

    if resolved == "auto":
        resolved = _auto_detect_provider(api_key)

    if not api_key and not client:
        env_var = _PROVIDER_ENV_KEYS.get(resolved)
        if env_var:
            api_key = os.getenv(env_var)

    if resolved == "claude":
        from .providers.claude import ClaudeProvider

        return ClaudeProvider(api_key=api_key, model=model, client=client, timeout=timeout)
    elif resolved == "openai":
        from .providers.openai import OpenAIProvider

        return OpenAIProvider(api_key=api_key, model=model, client=client, timeout=timeout)
    else:
        raise LLMError(f"Unknown provider: {resolved}. Use: claude, openai")


def create_reasoning_provider(llm_config: dict) -> LLMProvider | None:
    """Provider for consolidation reasoning, or None when disabled or unconfigured.

    A missing key is not an error here: consolidation runs on heuristics alone.
    """
    if not llm_config.get("enabled", False):
        return None
    try:
        return create_llm_provider(
            provider=llm_config.get("provider"),
            api_key=llm_config.get("api_key"),
            model=llm_config.get("model"),
            timeout=llm_config.get("timeout_seconds", 30.0),
        )
    except LLMError as e:
        logger.warning("reasoning_provider_unavailable", error=str(e))
        return None


def _detect_provider_from_key(api_key: str) -> str | None:
    """Infer provider from API key prefix."""
    if api_key.startswith("sk-ant-"):
        return "claude"
    if api_key.startswith("sk-"):
        return "openai"
    return None


def _auto_detect_provider(api_key: str | None = None) -> str:
    """Detect provider from explicit key prefix, then env vars."""
    if api_key:
        inferred = _detect_provider_from_key(api_key)
        if inferred:
            return inferred

    for name in _AUTO_DETECT_ORDER:
        env_var = _PROVIDER_ENV_KEYS[name]
        if os.getenv(env_var):
            return name
    raise LLMError("No LLM API key found. Set one of: ANTHROPIC_API_KEY, OPENAI_API_KEY")
