"""Delivery collaborators: outcome e-mail, speech synthesis, image generation.

Each provider is a small stateless object behind a ``Protocol`` so tests (and
future vendors) can swap implementations.  Providers report failures through
:class:`DeliveryResult` instead of raising; a failed delivery never fails the
task it belongs to.

The **registry pattern** keeps initialisation trivial: module-level
dictionaries map the provider identifier to a singleton instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from typing import Protocol
from typing import runtime_checkable

import httpx
from openai import AsyncOpenAI
from openai import OpenAIError

from humanagent.config import get_settings
from humanagent.utils.log import log

logger = log.bind(component="delivery")

OPENAI_TTS_MAX_CHARS = 4096
ELEVENLABS_MAX_CHARS = 5000
ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"
ELEVENLABS_DEFAULT_VOICE = "EXAVITQu4vr4xnSDxMaL"
ELEVENLABS_DEFAULT_MODEL = "eleven_multilingual_v2"
HTTP_TIMEOUT = 30.0


@dataclass
class DeliveryResult:
    ok: bool
    reference_id: Optional[str] = None
    error: Optional[str] = None
    data: Optional[bytes] = None
    content_type: Optional[str] = None


def _http_error_text(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return f"credentials rejected ({status})"
        return f"HTTP {status}: {exc.response.text[:200]}"
    return f"{type(exc).__name__}: {exc}"


# ---------------------------------------------------------------------------
# Public interfaces
# ---------------------------------------------------------------------------


@runtime_checkable
class EmailProvider(Protocol):
    name: str

    async def send(self, *, api_key: str, to: str, subject: str, text: str) -> DeliveryResult:
        """Send a plain-text message to *to*."""


@runtime_checkable
class SpeechProvider(Protocol):
    name: str

    async def synthesize(self, *, api_key: str, text: str, voice: Optional[str] = None) -> DeliveryResult:
        """Return mp3 bytes in ``DeliveryResult.data``."""


@runtime_checkable
class ImageProvider(Protocol):
    name: str

    async def generate(self, *, api_key: str, prompt: str) -> DeliveryResult:
        """Return the generated image URL as ``reference_id``."""


# ---------------------------------------------------------------------------
# AgentMail (e-mail)
# ---------------------------------------------------------------------------


class AgentMailEmailProvider:
    name = "agentmail"

    def __init__(self, base_url: Optional[str] = None, inbox: Optional[str] = None) -> None:
        self._base_url = base_url
        self._inbox = inbox

    async def send(self, *, api_key: str, to: str, subject: str, text: str) -> DeliveryResult:
        settings = get_settings()
        base_url = (self._base_url or settings.agentmail_base_url).rstrip("/")
        inbox = self._inbox or settings.agentmail_inbox
        if not inbox:
            return DeliveryResult(ok=False, error="no AgentMail inbox configured")

        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
                response = await client.post(
                    f"{base_url}/inboxes/{inbox}/messages/send",
                    headers={"Authorization": f"Bearer {api_key}"},
                    json={"to": [to], "subject": subject, "text": text},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as exc:
            error = _http_error_text(exc)
            logger.warning("email-send-failed", provider=self.name, error=error)
            return DeliveryResult(ok=False, error=error)

        message_id = body.get("message_id") or body.get("id")
        logger.info("email-sent", provider=self.name, message_id=message_id)
        return DeliveryResult(ok=True, reference_id=message_id)


# ---------------------------------------------------------------------------
# Speech
# ---------------------------------------------------------------------------


class OpenAISpeechProvider:
    name = "openai"

    async def synthesize(self, *, api_key: str, text: str, voice: Optional[str] = None) -> DeliveryResult:
        client = AsyncOpenAI(api_key=api_key, timeout=HTTP_TIMEOUT)
        try:
            response = await client.audio.speech.create(
                model="tts-1",
                voice=voice or "nova",
                input=text[:OPENAI_TTS_MAX_CHARS],
                response_format="mp3",
            )
        except OpenAIError as exc:
            logger.warning("tts-failed", provider=self.name, error=str(exc))
            return DeliveryResult(ok=False, error=str(exc))
        return DeliveryResult(ok=True, data=response.content, content_type="audio/mpeg")


class ElevenLabsSpeechProvider:
    name = "elevenlabs"

    async def synthesize(self, *, api_key: str, text: str, voice: Optional[str] = None) -> DeliveryResult:
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
                response = await client.post(
                    f"{ELEVENLABS_API_BASE}/text-to-speech/{voice or ELEVENLABS_DEFAULT_VOICE}",
                    headers={"xi-api-key": api_key, "Accept": "audio/mpeg"},
                    json={
                        "text": text[:ELEVENLABS_MAX_CHARS],
                        "model_id": ELEVENLABS_DEFAULT_MODEL,
                        "voice_settings": {
                            "stability": 0.5,
                            "similarity_boost": 0.75,
                            "style": 0,
                            "use_speaker_boost": True,
                        },
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            error = _http_error_text(exc)
            logger.warning("tts-failed", provider=self.name, error=error)
            return DeliveryResult(ok=False, error=error)
        return DeliveryResult(ok=True, data=response.content, content_type="audio/mpeg")


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class OpenAIImageProvider:
    name = "openai"

    def __init__(self, model: str = "dall-e-3", size: str = "1024x1024") -> None:
        self.model = model
        self.size = size

    async def generate(self, *, api_key: str, prompt: str) -> DeliveryResult:
        client = AsyncOpenAI(api_key=api_key, timeout=HTTP_TIMEOUT * 4)
        try:
            result = await client.images.generate(model=self.model, prompt=prompt, n=1, size=self.size)
        except OpenAIError as exc:
            logger.warning("image-failed", provider=self.name, error=str(exc))
            return DeliveryResult(ok=False, error=str(exc))
        url = result.data[0].url if result.data else None
        if not url:
            return DeliveryResult(ok=False, error="image API returned no URL")
        return DeliveryResult(ok=True, reference_id=url)


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------

_EMAIL_REGISTRY: dict[str, EmailProvider] = {"agentmail": AgentMailEmailProvider()}
_SPEECH_REGISTRY: dict[str, SpeechProvider] = {
    "openai": OpenAISpeechProvider(),
    "elevenlabs": ElevenLabsSpeechProvider(),
}
_IMAGE_REGISTRY: dict[str, ImageProvider] = {"openai": OpenAIImageProvider()}


def get_email_provider(name: str = "agentmail") -> EmailProvider | None:
    return _EMAIL_REGISTRY.get(name)


def get_speech_provider(name: str = "openai") -> SpeechProvider | None:
    return _SPEECH_REGISTRY.get(name)


def get_image_provider(name: str = "openai") -> ImageProvider | None:
    return _IMAGE_REGISTRY.get(name)


__all__ = [
    "DeliveryResult",
    "EmailProvider",
    "SpeechProvider",
    "ImageProvider",
    "AgentMailEmailProvider",
    "OpenAISpeechProvider",
    "ElevenLabsSpeechProvider",
    "OpenAIImageProvider",
    "get_email_provider",
    "get_speech_provider",
    "get_image_provider",
]
