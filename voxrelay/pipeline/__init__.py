"""
Voice interaction pipeline for voxrelay.

Provides:
- Transcript intent classification
- Per-session interaction state
- The orchestrator that routes utterances to dispatch, inbox and speech
"""

from .intents import Intent, classify
from .playback import AudioPlayback, Earcon, Transcriber
from .session_state import ChoiceKind, PendingChoice, SessionState
from .orchestrator import ActiveChannel, PipelineOrchestrator
from .launcher import (
    create_orchestrator,
    get_orchestrator,
    start_voice_pipeline,
    stop_voice_pipeline,
)

__all__ = [
    "Intent",
    "classify",
    "AudioPlayback",
    "Earcon",
    "Transcriber",
    "ChoiceKind",
    "PendingChoice",
    "SessionState",
    "ActiveChannel",
    "PipelineOrchestrator",
    "create_orchestrator",
    "get_orchestrator",
    "start_voice_pipeline",
    "stop_voice_pipeline",
]
