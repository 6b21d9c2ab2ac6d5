"""
Speech synthesis router with primary/fallback failover.

Routing policy:
- Try the primary, then the fallback (when configured and different).
- After the primary fails, the fallback goes first until the primary's
  unavailability window has elapsed.
- A primary success clears the window immediately.
- A runtime override pins one backend and bypasses failover until cleared.

Repeated failures are folded into failure signatures for diagnostics.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import httpx

from .tts_backends import (
    SpeechBackend,
    TTSBackendError,
    TTSUnavailableError,
    create_backends,
)

logger = logging.getLogger("voxrelay.services.tts_router")

MIN_PRIMARY_UNAVAILABLE_SECONDS = 3.0
MAX_SIGNATURE_TEXT = 200


@dataclass
class FailureSignature:
    """Occurrences of one distinct backend failure."""

    count: int
    first_seen_at: float
    last_seen_at: float


def failure_key(backend: str, error: Exception) -> str:
    text = re.sub(r"\s+", " ", str(error)).strip().lower()
    return f"{backend}:{text[:MAX_SIGNATURE_TEXT]}"


class TTSRouter:
    """Picks a speech backend per call and remembers which one is unhealthy."""

    def __init__(
        self,
        backends: dict[str, SpeechBackend],
        primary: str,
        fallback: Optional[str] = None,
        primary_retry_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._backends = backends
        self._primary = primary
        self._fallback = fallback or None
        self._primary_retry_seconds = primary_retry_seconds
        self._clock = clock

        self._override: Optional[str] = None
        self._primary_unavailable_until = 0.0
        self._signatures: dict[str, FailureSignature] = {}

    @classmethod
    def from_config(cls, config, client: Optional[httpx.AsyncClient] = None) -> "TTSRouter":
        """Build a router and its backends from a TTSConfig."""
        return cls(
            create_backends(config, client),
            primary=config.backend,
            fallback=config.fallback_backend,
            primary_retry_seconds=config.primary_retry_seconds,
        )

    @property
    def primary(self) -> str:
        return self._primary

    @property
    def fallback(self) -> Optional[str]:
        return self._fallback

    @property
    def override(self) -> Optional[str]:
        return self._override

    @property
    def primary_unavailable(self) -> bool:
        return self._clock() < self._primary_unavailable_until

    def set_override(self, backend: str) -> None:
        """Pin every synthesis to ``backend`` until clear_override()."""
        if backend not in self._backends:
            raise ValueError(f"Unknown TTS backend: {backend}")
        self._override = backend
        self._primary_unavailable_until = 0.0
        logger.info("TTS backend override set: %s", backend)

    def clear_override(self) -> None:
        if self._override is not None:
            logger.info("TTS backend override cleared (was %s)", self._override)
        self._override = None
        self._primary_unavailable_until = 0.0

    def available_backends(self) -> list[str]:
        """Backends that have the credentials or URL they need."""
        return [name for name, b in self._backends.items() if b.is_configured()]

    def failure_signatures(self) -> dict[str, FailureSignature]:
        return dict(self._signatures)

    def candidate_order(self, backend: Optional[str] = None) -> list[str]:
        """Backends to try, in order. A per-call backend beats the override."""
        pinned = backend or self._override
        if pinned:
            return [pinned]

        fallback = self._fallback
        if fallback and fallback != self._primary:
            if self.primary_unavailable:
                return [fallback, self._primary]
            return [self._primary, fallback]
        return [self._primary]

    async def synthesize(self, text: str, backend: Optional[str] = None) -> AsyncIterator[bytes]:
        """
        Return an audio byte stream for ``text``.

        Raises:
            TTSUnavailableError: every candidate backend failed
        """
        pinned = bool(backend or self._override)
        order = self.candidate_order(backend)
        last_error: Optional[Exception] = None

        for name in order:
            impl = self._backends.get(name)
            start = self._clock()
            try:
                if impl is None:
                    raise TTSBackendError(name, "unknown backend")
                stream = await impl.open_stream(text)
            except TTSBackendError as e:
                last_error = e
                self._record_failure(name, e)
                if name == self._primary and len(order) > 1 and not pinned:
                    self._mark_primary_unavailable()
                continue

            logger.debug("TTS %s first audio in %.0fms", name, (self._clock() - start) * 1000)
            self._record_success(name, pinned)
            return stream

        raise TTSUnavailableError(order, last_error) from last_error

    def _mark_primary_unavailable(self) -> None:
        window = max(MIN_PRIMARY_UNAVAILABLE_SECONDS, self._primary_retry_seconds)
        self._primary_unavailable_until = self._clock() + window
        logger.warning(
            "TTS primary %s unavailable for %.0fs, preferring %s",
            self._primary, window, self._fallback,
        )

    def _record_success(self, name: str, pinned: bool) -> None:
        if name == self._primary:
            if self._primary_unavailable_until:
                logger.info("TTS primary %s recovered", name)
            self._primary_unavailable_until = 0.0
        elif not pinned:
            logger.warning("TTS fallback active: %s (primary %s)", name, self._primary)

    def _record_failure(self, name: str, error: Exception) -> None:
        now = self._clock()
        key = failure_key(name, error)
        signature = self._signatures.get(key)
        if signature is None:
            self._signatures[key] = FailureSignature(count=1, first_seen_at=now, last_seen_at=now)
            logger.warning("TTS backend %s failed: %s", name, error)
        else:
            signature.count += 1
            signature.last_seen_at = now
            logger.warning(
                "TTS backend %s failed again (%d times since %.0fs ago): %s",
                name, signature.count, now - signature.first_seen_at, error,
            )

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()


# Module-level instance management
_tts_router: Optional[TTSRouter] = None


def get_tts_router() -> TTSRouter:
    """Get or create the process-wide TTS router."""
    global _tts_router
    if _tts_router is None:
        from ..config import settings

        _tts_router = TTSRouter.from_config(settings.tts)
        logger.info(
            "TTS router ready (primary=%s, fallback=%s)",
            _tts_router.primary, _tts_router.fallback or "none",
        )
    return _tts_router


async def shutdown_tts_router() -> None:
    global _tts_router
    if _tts_router is not None:
        await _tts_router.aclose()
        _tts_router = None
