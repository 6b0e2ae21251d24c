"""Tests for the model invoker: error taxonomy, retries and degraded answers."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
from langchain_core.messages import AIMessage
from langchain_core.messages import HumanMessage

from humanagent.exceptions import ProviderFatal
from humanagent.exceptions import ProviderTransient
from humanagent.managers.model_invoker import EMPTY_RESPONSE_TEXT
from humanagent.managers.model_invoker import ModelInvoker
from humanagent.managers.model_invoker import build_config_diagnostic
from humanagent.managers.model_invoker import classify_provider_error


class _StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class TestClassifyProviderError:
    @pytest.mark.parametrize(
        "exc",
        [
            _StatusError("rate limited", 429),
            _StatusError("bad gateway", 502),
            ConnectionError("connection reset"),
            asyncio.TimeoutError(),
            httpx.ConnectError("dns failure"),
        ],
    )
    def test_transient(self, exc):
        assert isinstance(classify_provider_error(exc, provider="openai"), ProviderTransient)

    @pytest.mark.parametrize(
        "exc",
        [
            _StatusError("Incorrect API key provided", 401),
            _StatusError("forbidden", 403),
            _StatusError("model not found", 404),
            _StatusError("You exceeded your current quota: insufficient_quota", 429),
        ],
    )
    def test_fatal(self, exc):
        error = classify_provider_error(exc, provider="openai")
        assert isinstance(error, ProviderFatal)
        assert error.provider == "openai"

    def test_already_classified_passes_through(self):
        original = ProviderFatal("nope")
        assert classify_provider_error(original) is original


class TestConfigDiagnostic:
    def test_invalid_key_hint_without_secret(self):
        text = build_config_diagnostic(
            provider="openai", model="gpt-4o-mini", error="Incorrect API key provided: sk-abc***xyz"
        )
        assert "configuration issue" in text
        assert "Re-save the key" in text
        assert "sk-abc" not in text

    def test_base_url_hint(self):
        text = build_config_diagnostic(
            provider="openrouter", model="x", error="404 page not found", base_url="https://example.test"
        )
        assert "https://example.test" in text

    def test_unrelated_error(self):
        assert build_config_diagnostic(provider="openai", model="m", error="connection reset by peer") is None


class TestModelInvoker:
    @pytest.mark.asyncio
    async def test_usage_is_reported(self, db_session, sample_agent, scripted_llm):
        llm = scripted_llm("Here is the answer.", tokens_per_call=90)

        result = await ModelInvoker(db_session, sample_agent, chat_model=llm).invoke("system", "user")

        assert result.content == "Here is the answer."
        assert (result.prompt_tokens, result.completion_tokens, result.total_tokens) == (60, 30, 90)
        assert result.model == "gpt-4o-mini"
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_retries_transient_then_gives_up(self, db_session, sample_agent, scripted_llm, monkeypatch):
        monkeypatch.setenv("LLM_MAX_RETRIES", "2")
        llm = scripted_llm(_StatusError("overloaded", 503))

        with pytest.raises(ProviderTransient):
            await ModelInvoker(db_session, sample_agent, chat_model=llm).invoke("system", "user")

        assert llm.call_count == 2

    @pytest.mark.asyncio
    async def test_empty_answer_is_degraded(self, db_session, sample_agent, scripted_llm):
        llm = scripted_llm("   ")

        result = await ModelInvoker(db_session, sample_agent, chat_model=llm).invoke("system", "user")

        assert result.content == EMPTY_RESPONSE_TEXT
        assert result.degraded
        assert llm.call_count == 1

    @pytest.mark.asyncio
    async def test_refusal_is_degraded(self, db_session, sample_agent):
        chat = AsyncMock()
        chat.ainvoke.return_value = AIMessage(content="", additional_kwargs={"refusal": "I can't help with that."})

        result = await ModelInvoker(db_session, sample_agent, chat_model=chat).invoke("system", "user")

        assert result.degraded
        assert result.content == "I was unable to process that request: I can't help with that."

    @pytest.mark.asyncio
    async def test_reasoning_model_gets_single_user_turn(self, db_session, make_agent, scripted_llm):
        agent = make_agent(llm_model="o3-mini")
        llm = scripted_llm("ok then")

        await ModelInvoker(db_session, agent, chat_model=llm).invoke("be brief", "what now?")

        (message,) = llm.calls[0]
        assert isinstance(message, HumanMessage)
        assert message.content.startswith("be brief")
        assert message.content.endswith("what now?")

    @pytest.mark.asyncio
    async def test_disabled_without_injected_model(self, db_session, sample_agent, monkeypatch):
        monkeypatch.setenv("LLM_DISABLED", "1")
        with pytest.raises(ProviderFatal, match="disabled"):
            await ModelInvoker(db_session, sample_agent).invoke("system", "user")

    @pytest.mark.asyncio
    async def test_missing_credential_is_fatal(self, db_session, sample_agent):
        with pytest.raises(ProviderFatal, match="no credential"):
            await ModelInvoker(db_session, sample_agent).invoke("system", "user")

    @pytest.mark.asyncio
    async def test_unknown_provider_is_fatal(self, db_session, make_agent):
        agent = make_agent(llm_provider="nonexistent")
        with pytest.raises(ProviderFatal, match="Unknown LLM provider"):
            await ModelInvoker(db_session, agent).invoke("system", "user")
