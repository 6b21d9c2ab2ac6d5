"""
Transient per-session interaction state.

One SessionState exists per active voice session and is owned by its
orchestrator. Nothing here is persisted. Deadlines are monotonic seconds
and are checked lazily where they are used.
"""

import time
from dataclasses import dataclass, field, fields, MISSING
from enum import Enum
from typing import Any, Awaitable, Callable, Optional


class ChoiceKind(str, Enum):
    """Which question the session is waiting on."""

    QUEUE = "queue"  # "Inbox, or wait?"
    SWITCH = "switch"  # "Read the last message, or new prompt?"


@dataclass
class PendingChoice:
    """A spoken question awaiting a short answer."""

    kind: ChoiceKind
    queue_item_id: Optional[str] = None
    display_name: str = ""
    last_message: Optional[str] = None
    reprompt: str = ""


def is_active(deadline: float, now: Optional[float] = None) -> bool:
    """True while ``now`` is before ``deadline``."""
    if now is None:
        now = time.monotonic()
    return now < deadline


@dataclass
class SessionState:
    """Mode flags, grace deadlines and cooldowns for one voice session."""

    # Playback tracking
    last_spoken_text: str = ""
    last_spoken_full_text: str = ""
    last_spoken_was_summary: bool = False
    last_playback_text: str = ""
    last_playback_completed_at: float = 0.0

    # Wait / queue disposition
    silent_wait: bool = False
    pending_wait_callback: Optional[Callable[[str], Awaitable[Any]]] = None
    active_wait_queue_item_id: Optional[str] = None
    speculative_queue_item_id: Optional[str] = None
    pending_choice: Optional[PendingChoice] = None

    # Grace periods
    gate_grace_until: float = 0.0
    prompt_grace_until: float = 0.0

    # Cooldowns
    reject_reprompt_cooldown_until: float = 0.0
    failed_wake_cue_cooldown_until: float = 0.0
    dependency_alert_cooldown_until: dict[str, float] = field(
        default_factory=lambda: {"stt": 0.0, "tts": 0.0}
    )

    # In-flight guards
    reject_reprompt_in_flight: bool = False
    missed_wake_analysis_in_flight: bool = False
    idle_notify_in_flight: bool = False

    def reset(self) -> None:
        """Restore every field to its initial value."""
        for f in fields(self):
            if f.default_factory is not MISSING:
                value = f.default_factory()
            else:
                value = f.default
            setattr(self, f.name, value)

    def clear_wait(self) -> None:
        """Drop any association between the session and an in-flight answer."""
        self.silent_wait = False
        self.pending_wait_callback = None
        self.active_wait_queue_item_id = None
        self.speculative_queue_item_id = None

    def clear_choice(self) -> None:
        self.pending_choice = None
        self.prompt_grace_until = 0.0

    @property
    def waiting_on_response(self) -> bool:
        return self.silent_wait or self.pending_wait_callback is not None

    def choice_open(self, now: Optional[float] = None) -> bool:
        """A pending choice exists and its answer window has not closed."""
        return self.pending_choice is not None and is_active(self.prompt_grace_until, now)
