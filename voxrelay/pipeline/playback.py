"""
Collaborator protocols for the voice pipeline.

Audio capture, speech-to-text and the actual audio output live outside this
package. The orchestrator talks to them only through these protocols.
"""

from enum import Enum
from typing import AsyncIterator, Protocol


class Earcon(str, Enum):
    """Short notification sounds."""

    LISTENING = "listening"
    ACKNOWLEDGED = "acknowledged"
    ERROR = "error"
    TIMEOUT_WARNING = "timeout-warning"
    CANCELLED = "cancelled"
    READY = "ready"


class Transcriber(Protocol):
    """Protocol for speech-to-text engines."""

    async def transcribe(self, audio: bytes) -> str:
        """Return transcript text, or an empty string for no speech."""
        ...


class AudioPlayback(Protocol):
    """Protocol for the session's audio output."""

    def is_playing(self) -> bool:
        """True while any audio (speech, tone or earcon) is playing."""
        ...

    def is_waiting(self) -> bool:
        """True while the looping waiting tone is what is playing."""
        ...

    def start_waiting_loop(self) -> None:
        ...

    def stop_waiting_loop(self) -> None:
        ...

    async def play_stream(self, stream: AsyncIterator[bytes]) -> None:
        """Play an audio byte stream to completion."""
        ...

    def stop_playback(self) -> None:
        """Stop and discard whatever is playing."""
        ...

    async def play_earcon(self, earcon: Earcon) -> None:
        """Play a notification sound to completion."""
        ...
