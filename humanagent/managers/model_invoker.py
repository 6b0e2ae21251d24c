"""ModelInvoker – one model call for one agent run.

Bridges the Agent row (provider, model), the credential resolver and the
provider clients:

* OpenAI-compatible providers go through a langchain ``ChatOpenAI``
  (or an injected chat model in tests).
* Anthropic goes through ``anthropic.AsyncAnthropic``.

Every failure surfaces as :class:`ProviderTransient` (retried with back-off)
or :class:`ProviderFatal` (auth, billing, quota, configuration).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from typing import Optional

from anthropic import AsyncAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage
from langchain_core.messages import HumanMessage
from langchain_core.messages import SystemMessage
from sqlalchemy.orm import Session

from humanagent.agents_def.providers import DEFAULT_MAX_TOKENS
from humanagent.agents_def.providers import get_provider
from humanagent.agents_def.providers import is_reasoning_model
from humanagent.agents_def.providers import make_chat_model
from humanagent.config import get_settings
from humanagent.exceptions import ProviderError
from humanagent.exceptions import ProviderFatal
from humanagent.exceptions import ProviderTransient
from humanagent.models.models import Agent
from humanagent.services.credentials import CredentialResolver
from humanagent.utils.retry import async_retry

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "I was unable to generate a response for this request."

_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}
_FATAL_MARKERS = ("insufficient_quota", "billing", "invalid api key", "incorrect api key", "unauthorized")


@dataclass
class ModelResult:
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    provider: str = ""
    reasoning: Optional[str] = None
    # True when content is a stand-in for an empty or refused answer.
    degraded: bool = False


def classify_provider_error(exc: BaseException, *, provider: Optional[str] = None) -> ProviderError:
    """Map an SDK / transport exception onto the two-level provider taxonomy."""

    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ProviderTransient(f"{provider or 'provider'} call timed out", provider=provider)

    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    code = str(getattr(exc, "code", "") or "").lower()

    if code == "insufficient_quota" or any(marker in lowered for marker in _FATAL_MARKERS):
        return ProviderFatal(message, provider=provider, status_code=status)
    if status is None or status in _TRANSIENT_STATUS or status >= 500:
        # Connection resets and other network errors carry no status.
        return ProviderTransient(message, provider=provider, status_code=status)
    # Remaining 4xx: auth, payment, bad request, unknown model.
    return ProviderFatal(message, provider=provider, status_code=status)


def build_config_diagnostic(*, provider: str, model: str, error: str, base_url: Optional[str] = None) -> Optional[str]:
    """Explain a configuration failure to the task owner, or ``None`` if it is not one.

    Never echoes credential values.
    """
    text = error.lower()
    config_markers = (
        "unsupported parameter",
        "invalid_request_error",
        "model",
        "api key",
        "unauthorized",
        "authentication",
        "401",
        "403",
        "not found",
        "endpoint",
        "base url",
        "no credential",
    )
    if not any(m in text for m in config_markers):
        return None

    hints = []
    if "unsupported parameter" in text:
        hints.append("Provider/model parameter mismatch. Try a different model for this provider.")
    if ("model" in text and "not found" in text) or "does not exist" in text:
        hints.append("Model ID may be invalid for this provider. Re-check the model name.")
    if any(m in text for m in ("incorrect api key", "invalid api key", "authentication", "401")):
        hints.append("API key may be invalid or inactive. Re-save the key.")
    if "no credential" in text:
        hints.append(f"No API key is configured for {provider}.")
    if base_url and any(m in text for m in ("endpoint", "not found", "base url")):
        hints.append(f"Base URL may be incorrect ({base_url}). Verify it includes the expected /v1 path.")
    if not hints:
        hints.append("Check the provider, model and credential settings.")
    return f"I could not call {provider} model {model} due to a configuration issue. " + " ".join(hints)


def _usage_from_message(message: AIMessage) -> tuple[int, int, int]:
    usage = getattr(message, "usage_metadata", None) or {}
    if usage:
        prompt = int(usage.get("input_tokens") or 0)
        completion = int(usage.get("output_tokens") or 0)
        return prompt, completion, int(usage.get("total_tokens") or prompt + completion)
    token_usage = (message.response_metadata or {}).get("token_usage") or {}
    prompt = int(token_usage.get("prompt_tokens") or 0)
    completion = int(token_usage.get("completion_tokens") or 0)
    return prompt, completion, int(token_usage.get("total_tokens") or prompt + completion)


def _text_from_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return ""


class ModelInvoker:
    """Invoke the agent's configured model once (with retries)."""

    def __init__(
        self,
        db: Session,
        agent: Agent,
        *,
        chat_model: Optional[BaseChatModel] = None,
        resolver: Optional[CredentialResolver] = None,
    ):
        settings = get_settings()
        self.agent = agent
        self.provider = (agent.llm_provider or settings.default_provider).lower()
        self.model = agent.llm_model or settings.default_model
        self.timeout = settings.llm_timeout_seconds
        self.max_attempts = max(1, settings.llm_max_retries)
        self._chat_model = chat_model
        self._resolver = resolver or CredentialResolver(agent.id, db, owner_id=agent.owner_id)
        self.base_url: Optional[str] = None

    async def invoke(self, system_prompt: str, user_prompt: str) -> ModelResult:
        if self._chat_model is None and get_settings().llm_disabled:
            raise ProviderFatal("LLM calls are disabled (LLM_DISABLED)", provider=self.provider)

        call = async_retry(
            max_attempts=self.max_attempts,
            retriable=lambda exc: isinstance(exc, ProviderTransient),
            provider=self.provider,
        )(self._call_once)

        result = await call(system_prompt, user_prompt)
        if not result.content.strip():
            logger.warning(
                "empty content from provider=%s model=%s completion_tokens=%s",
                self.provider,
                self.model,
                result.completion_tokens,
            )
            result.content = EMPTY_RESPONSE_TEXT
            result.degraded = True
        return result

    async def _call_once(self, system_prompt: str, user_prompt: str) -> ModelResult:
        try:
            if self._chat_model is not None:
                coro = self._call_chat_model(self._chat_model, system_prompt, user_prompt)
            else:
                coro = self._call_provider(system_prompt, user_prompt)
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except ProviderError:
            raise
        except Exception as exc:
            error = classify_provider_error(exc, provider=self.provider)
            logger.warning("model call failed provider=%s model=%s: %s", self.provider, self.model, error)
            raise error from exc

    async def _call_provider(self, system_prompt: str, user_prompt: str) -> ModelResult:
        try:
            spec = get_provider(self.provider)
        except ValueError as exc:
            raise ProviderFatal(str(exc), provider=self.provider) from exc
        credential = self._resolver.get(spec.credential)
        if credential is None:
            raise ProviderFatal(f"no credential configured for provider {spec.name}", provider=spec.name)
        self.base_url = credential.base_url or spec.base_url

        if not spec.openai_compatible:
            return await self._call_anthropic(credential.api_key, system_prompt, user_prompt)

        chat_model = make_chat_model(
            spec.name,
            self.model,
            credential.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
        )
        return await self._call_chat_model(chat_model, system_prompt, user_prompt)

    async def _call_chat_model(self, chat_model: BaseChatModel, system_prompt: str, user_prompt: str) -> ModelResult:
        if is_reasoning_model(self.model):
            # Reasoning models ignore or reject system turns on several providers.
            messages = [HumanMessage(content=f"{system_prompt}\n\n---\n\n{user_prompt}")]
        else:
            messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]

        message = await chat_model.ainvoke(messages)
        prompt_tokens, completion_tokens, total_tokens = _usage_from_message(message)

        refusal = (message.additional_kwargs or {}).get("refusal")
        if isinstance(refusal, str) and refusal.strip():
            logger.warning("model %s refused: %s", self.model, refusal)
            return ModelResult(
                content=f"I was unable to process that request: {refusal.strip()}",
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
                model=self.model,
                provider=self.provider,
                degraded=True,
            )

        return ModelResult(
            content=_text_from_content(message.content),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            model=self.model,
            provider=self.provider,
            reasoning=(message.additional_kwargs or {}).get("reasoning_content"),
        )

    async def _call_anthropic(self, api_key: str, system_prompt: str, user_prompt: str) -> ModelResult:
        client = AsyncAnthropic(api_key=api_key, timeout=self.timeout, max_retries=0)
        response = await client.messages.create(
            model=self.model,
            max_tokens=DEFAULT_MAX_TOKENS,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        content = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        prompt_tokens = response.usage.input_tokens or 0
        completion_tokens = response.usage.output_tokens or 0
        return ModelResult(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            model=self.model,
            provider=self.provider,
        )

    def diagnostic_for(self, error: ProviderError) -> Optional[str]:
        return build_config_diagnostic(
            provider=self.provider,
            model=self.model,
            error=str(error),
            base_url=self.base_url,
        )


__all__ = ["ModelInvoker", "ModelResult", "classify_provider_error", "build_config_diagnostic", "EMPTY_RESPONSE_TEXT"]
