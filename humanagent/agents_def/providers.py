"""Provider catalogue and chat model factory.

Every provider except Anthropic speaks the OpenAI chat-completions dialect,
so a single ``ChatOpenAI`` pointed at the provider's base URL covers them.
Anthropic is called through its own SDK by the invoker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

REASONING_MAX_TOKENS = 16384
DEFAULT_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    base_url: Optional[str]
    openai_compatible: bool = True
    credential_name: Optional[str] = None

    @property
    def credential(self) -> str:
        return self.credential_name or self.name


PROVIDERS = {
    "openai": ProviderSpec("openai", "https://api.openai.com/v1"),
    "openrouter": ProviderSpec("openrouter", "https://openrouter.ai/api/v1"),
    "deepseek": ProviderSpec("deepseek", "https://api.deepseek.com/v1"),
    "kimi": ProviderSpec("kimi", "https://api.moonshot.ai/v1"),
    "minimax": ProviderSpec("minimax", "https://api.minimax.chat/v1"),
    "mistral": ProviderSpec("mistral", "https://api.mistral.ai/v1"),
    "google": ProviderSpec("google", "https://generativelanguage.googleapis.com/v1beta/openai/"),
    "anthropic": ProviderSpec("anthropic", None, openai_compatible=False),
}


def get_provider(name: Optional[str]) -> ProviderSpec:
    """Return the catalogue entry for *name*; ``ValueError`` when unknown."""
    key = (name or "").strip().lower()
    try:
        return PROVIDERS[key]
    except KeyError:
        raise ValueError(f"Unknown LLM provider '{name}'. Supported: {', '.join(sorted(PROVIDERS))}") from None


def is_reasoning_model(model: str) -> bool:
    """o-series and gpt-5 models spend part of their budget on hidden reasoning."""
    lower = (model or "").lower()
    return lower.startswith(("o1", "o3", "o4", "gpt-5")) or any(p in lower for p in ("o1-", "o3-", "o4-"))


def make_chat_model(
    provider: str,
    model: str,
    api_key: str,
    *,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> ChatOpenAI:
    """Build a ``ChatOpenAI`` for an OpenAI-compatible *provider*.

    Retries are handled by the caller, so the client's own retry loop is off.
    """
    spec = get_provider(provider)
    if not spec.openai_compatible:
        raise ValueError(f"{spec.name} is not OpenAI-compatible; use its SDK")

    kwargs: dict = {
        "model": model,
        "api_key": api_key,
        "base_url": base_url or spec.base_url,
        "timeout": timeout,
        "max_retries": 0,
    }
    if is_reasoning_model(model):
        kwargs["max_tokens"] = max_tokens or REASONING_MAX_TOKENS
        kwargs["reasoning_effort"] = "low"
    else:
        kwargs["max_tokens"] = max_tokens or DEFAULT_MAX_TOKENS
        kwargs["temperature"] = DEFAULT_TEMPERATURE

    logger.debug("chat model provider=%s model=%s base_url=%s", spec.name, model, kwargs["base_url"])
    return ChatOpenAI(**kwargs)


__all__ = ["PROVIDERS", "ProviderSpec", "get_provider", "is_reasoning_model", "make_chat_model"]
