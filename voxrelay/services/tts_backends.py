"""
HTTP speech synthesis backends.

Each backend turns text into a streamed audio body from a remote provider.
A backend call fails on connection errors (after a small fixed-backoff
retry budget), on a non-2xx status, or on an empty body.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx

logger = logging.getLogger("voxrelay.services.tts_backends")

ELEVENLABS_API_URL = "https://api.elevenlabs.io"


class TTSError(Exception):
    """Base exception for speech synthesis errors."""

    pass


class TTSBackendError(TTSError):
    """Raised when one backend fails to produce audio."""

    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} TTS failed: {reason}")


class TTSUnavailableError(TTSError):
    """Raised when every candidate backend failed."""

    def __init__(self, attempted: list[str], last_error: Optional[Exception]):
        self.attempted = attempted
        self.last_error = last_error
        super().__init__(
            f"All TTS backends failed ({', '.join(attempted)}): {last_error}"
        )


class SpeechBackend:
    """Base class for HTTP speech backends."""

    name = "base"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        retries: int = 1,
        retry_backoff: float = 0.25,
    ):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._retries = retries
        self._retry_backoff = retry_backoff

    def is_configured(self) -> bool:
        return True

    def build_request(self, client: httpx.AsyncClient, text: str) -> httpx.Request:
        raise NotImplementedError

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def open_stream(self, text: str) -> AsyncIterator[bytes]:
        """
        Start synthesis and return the audio stream.

        Returns only once the first audio bytes have arrived, so a backend
        that answers with an error or nothing at all fails here rather than
        halfway through playback.
        """
        if not self.is_configured():
            raise TTSBackendError(self.name, "not configured")

        response = await self._send(text)
        if not response.is_success:
            try:
                body = await response.aread()
            except httpx.HTTPError as e:
                raise TTSBackendError(
                    self.name, f"HTTP {response.status_code}, body unreadable: {e}"
                ) from e
            finally:
                await response.aclose()
            detail = body[:200].decode("utf-8", errors="replace").strip()
            raise TTSBackendError(self.name, f"HTTP {response.status_code}: {detail}")

        chunks = response.aiter_bytes()
        try:
            first = b""
            while not first:
                first = await chunks.__anext__()
        except StopAsyncIteration:
            await response.aclose()
            raise TTSBackendError(self.name, "empty response body") from None
        except httpx.HTTPError as e:
            await response.aclose()
            raise TTSBackendError(self.name, str(e)) from e

        return self._relay(response, chunks, first)

    async def _send(self, text: str) -> httpx.Response:
        client = self._get_client()
        attempt = 0
        while True:
            try:
                request = self.build_request(client, text)
                return await client.send(request, stream=True)
            except httpx.TransportError as e:
                if attempt >= self._retries:
                    raise TTSBackendError(self.name, f"connection failed: {e}") from e
                attempt += 1
                logger.warning(
                    "%s TTS connection failed (%s), retry %d/%d",
                    self.name, e, attempt, self._retries,
                )
                await asyncio.sleep(self._retry_backoff)
            except httpx.HTTPError as e:
                raise TTSBackendError(self.name, str(e)) from e

    @staticmethod
    async def _relay(response: httpx.Response, chunks, first: bytes) -> AsyncIterator[bytes]:
        try:
            yield first
            async for chunk in chunks:
                if chunk:
                    yield chunk
        finally:
            await response.aclose()


class ElevenLabsBackend(SpeechBackend):
    """ElevenLabs streaming text-to-speech."""

    name = "elevenlabs"

    def __init__(
        self,
        api_key: Optional[str],
        voice_id: str,
        model_id: str = "eleven_multilingual_v2",
        base_url: str = ELEVENLABS_API_URL,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_request(self, client: httpx.AsyncClient, text: str) -> httpx.Request:
        return client.build_request(
            "POST",
            f"{self.base_url}/v1/text-to-speech/{self.voice_id}/stream",
            params={"output_format": "mp3_44100_128"},
            headers={"xi-api-key": self.api_key or ""},
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            },
        )


class KokoroBackend(SpeechBackend):
    """Kokoro-FastAPI server (OpenAI-compatible speech endpoint)."""

    name = "kokoro"

    def __init__(self, url: Optional[str], voice: str = "af_bella", **kwargs):
        super().__init__(**kwargs)
        self.url = url.rstrip("/") if url else None
        self.voice = voice

    def is_configured(self) -> bool:
        return bool(self.url)

    def build_request(self, client: httpx.AsyncClient, text: str) -> httpx.Request:
        return client.build_request(
            "POST",
            f"{self.url}/v1/audio/speech",
            json={
                "input": text,
                "voice": self.voice,
                "response_format": "wav",
                "stream": True,
                "speed": 1.0,
            },
        )


class ChatterboxBackend(SpeechBackend):
    """Chatterbox TTS server."""

    name = "chatterbox"

    def __init__(self, url: Optional[str], voice: str = "default", **kwargs):
        super().__init__(**kwargs)
        self.url = url.rstrip("/") if url else None
        self.voice = voice

    def is_configured(self) -> bool:
        return bool(self.url)

    def build_request(self, client: httpx.AsyncClient, text: str) -> httpx.Request:
        return client.build_request(
            "POST",
            f"{self.url}/v1/audio/speech",
            json={"input": text, "voice": self.voice},
        )


def create_backends(config, client: Optional[httpx.AsyncClient] = None) -> dict[str, SpeechBackend]:
    """Build all known backends from a TTSConfig."""
    common = {
        "client": client,
        "timeout": config.timeout,
        "retries": config.retries,
        "retry_backoff": config.retry_backoff,
    }
    backends: list[SpeechBackend] = [
        ElevenLabsBackend(
            config.elevenlabs_api_key,
            config.elevenlabs_voice_id,
            model_id=config.elevenlabs_model,
            **common,
        ),
        KokoroBackend(config.kokoro_url, config.kokoro_voice, **common),
        ChatterboxBackend(config.chatterbox_url, config.chatterbox_voice, **common),
    ]
    return {b.name: b for b in backends}
