"""
Tests for speech backends and the failover router.

Backends are exercised against httpx.MockTransport; the router uses fake
backends and a controllable clock.
"""

import json

import httpx
import pytest

from voxrelay.config import TTSConfig
from voxrelay.services.tts_backends import (
    ChatterboxBackend,
    ElevenLabsBackend,
    KokoroBackend,
    TTSBackendError,
    TTSUnavailableError,
    create_backends,
)
from voxrelay.services.tts_router import TTSRouter


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeBackend:
    """Speech backend that either streams its name or fails."""

    def __init__(self, name: str, fail: bool = False, configured: bool = True):
        self.name = name
        self.fail = fail
        self.configured = configured
        self.calls = 0

    def is_configured(self) -> bool:
        return self.configured

    async def open_stream(self, text: str):
        self.calls += 1
        if self.fail:
            raise TTSBackendError(self.name, "HTTP 503: overloaded")

        async def stream():
            yield self.name.encode()
            yield b":" + text.encode()

        return stream()

    async def aclose(self) -> None:
        pass


async def collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


def make_router(primary_fail=False, fallback_fail=False, retry=30.0, fallback="kokoro"):
    clock = FakeClock()
    backends = {
        "elevenlabs": FakeBackend("elevenlabs", fail=primary_fail),
        "kokoro": FakeBackend("kokoro", fail=fallback_fail),
        "chatterbox": FakeBackend("chatterbox"),
    }
    router = TTSRouter(
        backends,
        primary="elevenlabs",
        fallback=fallback,
        primary_retry_seconds=retry,
        clock=clock,
    )
    return router, backends, clock


# ------------------------------------------------------------------ #
# Router
# ------------------------------------------------------------------ #


class TestFailover:
    """Primary/fallback ordering and the unavailability window."""

    @pytest.mark.asyncio
    async def test_primary_first_when_healthy(self):
        router, backends, _ = make_router()
        assert router.candidate_order() == ["elevenlabs", "kokoro"]
        assert await collect(await router.synthesize("hi")) == b"elevenlabs:hi"
        assert backends["kokoro"].calls == 0

    @pytest.mark.asyncio
    async def test_fallback_serves_and_primary_marked_unavailable(self):
        router, backends, clock = make_router(primary_fail=True, retry=1.0)
        assert await collect(await router.synthesize("hi")) == b"kokoro:hi"
        assert router.primary_unavailable

        # Within the minimum window: fallback goes first, primary untouched
        clock.now += 2.9
        assert router.candidate_order() == ["kokoro", "elevenlabs"]
        await collect(await router.synthesize("again"))
        assert backends["elevenlabs"].calls == 1
        assert backends["kokoro"].calls == 2

        # After the window: primary first again
        clock.now += 0.2
        assert not router.primary_unavailable
        assert router.candidate_order() == ["elevenlabs", "kokoro"]

    @pytest.mark.asyncio
    async def test_configured_window_longer_than_minimum(self):
        router, _, clock = make_router(primary_fail=True, retry=30.0)
        await router.synthesize("hi")
        clock.now += 29.0
        assert router.primary_unavailable
        clock.now += 1.5
        assert not router.primary_unavailable

    @pytest.mark.asyncio
    async def test_primary_success_clears_window(self):
        router, backends, clock = make_router(primary_fail=True)
        await router.synthesize("hi")
        assert router.primary_unavailable

        backends["elevenlabs"].fail = False
        backends["kokoro"].fail = True
        clock.now += 1.0
        assert await collect(await router.synthesize("hi")) == b"elevenlabs:hi"
        assert not router.primary_unavailable

    @pytest.mark.asyncio
    async def test_no_fallback_only_primary(self):
        router, backends, _ = make_router(primary_fail=True, fallback="")
        assert router.candidate_order() == ["elevenlabs"]
        with pytest.raises(TTSUnavailableError):
            await router.synthesize("hi")
        assert not router.primary_unavailable
        assert backends["kokoro"].calls == 0

    def test_fallback_equal_to_primary_is_ignored(self):
        router, _, _ = make_router(fallback="elevenlabs")
        assert router.candidate_order() == ["elevenlabs"]

    @pytest.mark.asyncio
    async def test_all_fail_surfaces_last_error(self):
        router, _, _ = make_router(primary_fail=True, fallback_fail=True)
        with pytest.raises(TTSUnavailableError) as exc_info:
            await router.synthesize("hi")
        err = exc_info.value
        assert err.attempted == ["elevenlabs", "kokoro"]
        assert isinstance(err.last_error, TTSBackendError)
        assert err.last_error.backend == "kokoro"


class TestOverride:
    """Runtime and per-call backend selection."""

    @pytest.mark.asyncio
    async def test_override_bypasses_failover(self):
        router, backends, _ = make_router()
        router.set_override("chatterbox")
        assert router.candidate_order() == ["chatterbox"]
        assert await collect(await router.synthesize("hi")) == b"chatterbox:hi"
        assert backends["elevenlabs"].calls == 0

        backends["chatterbox"].fail = True
        with pytest.raises(TTSUnavailableError):
            await router.synthesize("hi")
        assert backends["kokoro"].calls == 0

    @pytest.mark.asyncio
    async def test_override_resets_failover_state(self):
        router, _, _ = make_router(primary_fail=True)
        await router.synthesize("hi")
        assert router.primary_unavailable
        router.set_override("kokoro")
        assert not router.primary_unavailable
        router.clear_override()
        assert router.override is None
        assert router.candidate_order() == ["elevenlabs", "kokoro"]

    def test_unknown_override_rejected(self):
        router, _, _ = make_router()
        with pytest.raises(ValueError):
            router.set_override("espeak")

    @pytest.mark.asyncio
    async def test_per_call_backend_beats_override(self):
        router, _, _ = make_router()
        router.set_override("chatterbox")
        assert await collect(await router.synthesize("hi", backend="kokoro")) == b"kokoro:hi"


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_failure_signatures_deduplicate(self):
        router, _, clock = make_router(primary_fail=True, fallback="")
        for _ in range(3):
            with pytest.raises(TTSUnavailableError):
                await router.synthesize("hi")
            clock.now += 1.0
        signatures = router.failure_signatures()
        assert len(signatures) == 1
        (key, signature), = signatures.items()
        assert key.startswith("elevenlabs:")
        assert signature.count == 3
        assert signature.last_seen_at - signature.first_seen_at == 2.0

    def test_available_backends(self):
        router, backends, _ = make_router()
        backends["elevenlabs"].configured = False
        assert router.available_backends() == ["kokoro", "chatterbox"]

    def test_from_config_available_backends(self):
        config = TTSConfig(elevenlabs_api_key=None, kokoro_url="http://k", chatterbox_url=None)
        router = TTSRouter.from_config(config)
        assert router.available_backends() == ["kokoro"]


# ------------------------------------------------------------------ #
# HTTP backends
# ------------------------------------------------------------------ #


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpBackends:
    """Request shapes and the failure contract."""

    @pytest.mark.asyncio
    async def test_kokoro_request_and_stream(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"RIFFdata")

        async with mock_client(handler) as client:
            backend = KokoroBackend("http://kokoro:8880/", "af_bella", client=client)
            audio = await collect(await backend.open_stream("hello"))

        assert audio == b"RIFFdata"
        request = seen[0]
        assert str(request.url) == "http://kokoro:8880/v1/audio/speech"
        assert json.loads(request.content) == {
            "input": "hello", "voice": "af_bella", "response_format": "wav",
            "stream": True, "speed": 1.0,
        }

    @pytest.mark.asyncio
    async def test_elevenlabs_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"ID3")

        async with mock_client(handler) as client:
            backend = ElevenLabsBackend("key-1", "voice-9", client=client)
            await collect(await backend.open_stream("hello"))

        request = seen[0]
        assert request.url.path == "/v1/text-to-speech/voice-9/stream"
        assert request.url.params["output_format"] == "mp3_44100_128"
        assert request.headers["xi-api-key"] == "key-1"
        body = json.loads(request.content)
        assert body["model_id"] == "eleven_multilingual_v2"
        assert body["voice_settings"] == {"stability": 0.5, "similarity_boost": 0.75}

    @pytest.mark.asyncio
    async def test_chatterbox_request(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, content=b"wav")

        async with mock_client(handler) as client:
            backend = ChatterboxBackend("http://cb:4123", "default", client=client)
            await collect(await backend.open_stream("hi"))
        assert seen == [{"input": "hi", "voice": "default"}]

    @pytest.mark.asyncio
    async def test_http_error_is_failure(self):
        async with mock_client(lambda r: httpx.Response(500, content=b"model crashed")) as client:
            backend = KokoroBackend("http://kokoro", client=client)
            with pytest.raises(TTSBackendError, match="HTTP 500: model crashed"):
                await backend.open_stream("hi")

    @pytest.mark.asyncio
    async def test_empty_body_is_failure(self):
        async with mock_client(lambda r: httpx.Response(200, content=b"")) as client:
            backend = KokoroBackend("http://kokoro", client=client)
            with pytest.raises(TTSBackendError, match="empty response body"):
                await backend.open_stream("hi")

    @pytest.mark.asyncio
    async def test_connection_errors_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, content=b"ok")

        async with mock_client(handler) as client:
            backend = KokoroBackend("http://kokoro", client=client, retries=1, retry_backoff=0)
            assert await collect(await backend.open_stream("hi")) == b"ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_budget(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with mock_client(handler) as client:
            backend = KokoroBackend("http://kokoro", client=client, retries=0)
            with pytest.raises(TTSBackendError, match="connection failed"):
                await backend.open_stream("hi")

    @pytest.mark.asyncio
    async def test_unconfigured_backend_fails(self):
        backend = ElevenLabsBackend(None, "voice")
        with pytest.raises(TTSBackendError, match="not configured"):
            await backend.open_stream("hi")

    def test_create_backends(self):
        backends = create_backends(TTSConfig())
        assert set(backends) == {"elevenlabs", "kokoro", "chatterbox"}


class ResetStream(httpx.AsyncByteStream):
    """Response body that drops the connection on first read."""

    async def __aiter__(self):
        raise httpx.ReadError("connection reset")
        yield b""  # pragma: no cover


class TestHttpFailover:
    """Router failover driven by real HTTP backends."""

    @pytest.mark.asyncio
    async def test_unreadable_error_body_falls_back(self):
        def broken(request):
            return httpx.Response(503, stream=ResetStream())

        def healthy(request):
            return httpx.Response(200, content=b"wav")

        async with mock_client(broken) as primary_client, mock_client(healthy) as fallback_client:
            router = TTSRouter(
                {
                    "kokoro": KokoroBackend("http://kokoro", client=primary_client),
                    "chatterbox": ChatterboxBackend("http://cb", client=fallback_client),
                },
                primary="kokoro",
                fallback="chatterbox",
            )
            audio = await collect(await router.synthesize("hi"))

        assert audio == b"wav"
        assert router.primary_unavailable
        [key] = router.failure_signatures()
        assert key.startswith("kokoro:")
        assert "http 503, body unreadable" in key

    @pytest.mark.asyncio
    async def test_unreadable_error_body_is_backend_failure(self):
        async with mock_client(lambda r: httpx.Response(503, stream=ResetStream())) as client:
            backend = KokoroBackend("http://kokoro", client=client)
            with pytest.raises(TTSBackendError, match="HTTP 503, body unreadable"):
                await backend.open_stream("hi")
