"""Tests for the HTTP delivery providers (no network: httpx mock transport)."""

import json
from unittest.mock import patch

import httpx
import pytest

from humanagent.delivery.providers import AgentMailEmailProvider
from humanagent.delivery.providers import ElevenLabsSpeechProvider
from humanagent.delivery.providers import get_email_provider
from humanagent.delivery.providers import get_image_provider
from humanagent.delivery.providers import get_speech_provider

_RealAsyncClient = httpx.AsyncClient


def _mock_client(handler, seen):
    def _factory(*args, **kwargs):
        def _record(request):
            seen.append(request)
            return handler(request)

        kwargs["transport"] = httpx.MockTransport(_record)
        return _RealAsyncClient(*args, **kwargs)

    return patch("humanagent.delivery.providers.httpx.AsyncClient", side_effect=_factory)


class TestAgentMail:
    @pytest.mark.asyncio
    async def test_send(self):
        seen = []
        with _mock_client(lambda request: httpx.Response(200, json={"message_id": "m-42"}), seen):
            result = await AgentMailEmailProvider(base_url="https://mail.test/v0/", inbox="inbox-1").send(
                api_key="am-key", to="boss@example.com", subject="Task completed", text="All done"
            )

        assert result.ok
        assert result.reference_id == "m-42"
        (request,) = seen
        assert str(request.url) == "https://mail.test/v0/inboxes/inbox-1/messages/send"
        assert request.headers["Authorization"] == "Bearer am-key"
        assert json.loads(request.content) == {
            "to": ["boss@example.com"],
            "subject": "Task completed",
            "text": "All done",
        }

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        with _mock_client(lambda request: httpx.Response(401, json={"error": "bad key"}), []):
            result = await AgentMailEmailProvider(base_url="https://mail.test/v0", inbox="x").send(
                api_key="wrong", to="a@example.com", subject="s", text="t"
            )

        assert not result.ok
        assert result.error == "credentials rejected (401)"

    @pytest.mark.asyncio
    async def test_missing_inbox(self, monkeypatch):
        monkeypatch.delenv("AGENTMAIL_INBOX", raising=False)
        result = await AgentMailEmailProvider(base_url="https://mail.test/v0").send(
            api_key="k", to="a@example.com", subject="s", text="t"
        )
        assert not result.ok


class TestElevenLabs:
    @pytest.mark.asyncio
    async def test_synthesize(self):
        seen = []
        with _mock_client(lambda request: httpx.Response(200, content=b"ID3mp3"), seen):
            result = await ElevenLabsSpeechProvider().synthesize(api_key="xi", text="x" * 6000)

        assert result.ok
        assert result.data == b"ID3mp3"
        assert result.content_type == "audio/mpeg"
        body = json.loads(seen[0].content)
        assert len(body["text"]) == 5000
        assert seen[0].headers["xi-api-key"] == "xi"

    @pytest.mark.asyncio
    async def test_server_error(self):
        with _mock_client(lambda request: httpx.Response(503, text="overloaded"), []):
            result = await ElevenLabsSpeechProvider().synthesize(api_key="xi", text="hello")

        assert not result.ok
        assert result.error.startswith("HTTP 503")


class TestRegistry:
    def test_lookup(self):
        assert get_email_provider().name == "agentmail"
        assert get_speech_provider("elevenlabs").name == "elevenlabs"
        assert get_image_provider().name == "openai"
        assert get_speech_provider("unknown") is None
