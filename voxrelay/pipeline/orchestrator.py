"""
Voice interaction orchestrator.

Turns finished utterances into actions:
utterance -> STT -> choice / wake gate -> intent -> dispatch -> speech

One orchestrator serves one voice session. Dispatches in queue and ask mode
run as background tasks so the session is free for the next utterance
while the remote agent works.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

from ..services.health_stats import HealthStats, get_health_stats
from ..services.reasoning import ConversationHistory, Responder
from ..services.tts_backends import TTSError
from ..storage import (
    QueueItem,
    QueueItemStatus,
    QueueStateWriteError,
    QueueStore,
    StorageError,
    VoiceMode,
    summarize_response,
)
from . import intents
from .playback import AudioPlayback, Earcon, Transcriber
from .session_state import ChoiceKind, PendingChoice, SessionState, is_active

logger = logging.getLogger("voxrelay.pipeline.orchestrator")

DISPATCH_FAILURE_SUMMARY = "Dispatch failed: gateway connection error."
DISPATCH_FAILURE_RESPONSE = (
    "I could not complete that request because the gateway connection failed. "
    "Please try again."
)

QUEUE_CHOICE_PROMPT = "Inbox, or wait?"
QUEUE_CHOICE_REPROMPT = "Say send to inbox, wait here, or cancel."
SWITCH_CHOICE_REPROMPT = "Say last message, new prompt, or cancel."

VOICE_USER_LABEL = "voice-user"
VOICE_ASSISTANT_LABEL = "voice-assistant"
VOICE_USER_PREFIX = "[voice-user]"

Spawner = Callable[[Coroutine[Any, Any, Any]], Any]


@dataclass
class ActiveChannel:
    """Where new requests from this session are sent."""

    channel: str
    display_name: str
    session_key: str


class PipelineOrchestrator:
    """
    Routes transcribed utterances for a single voice session.

    Audio capture, STT and audio output are injected collaborators; remote
    reasoning goes through a Responder and mirrored turns through the
    gateway client when one is given.
    """

    def __init__(
        self,
        *,
        transcriber: Transcriber,
        playback: AudioPlayback,
        tts,
        queue: QueueStore,
        responder: Responder,
        channel: ActiveChannel,
        gateway=None,
        poller=None,
        history: Optional[ConversationHistory] = None,
        stats: Optional[HealthStats] = None,
        state: Optional[SessionState] = None,
        spawn: Optional[Spawner] = None,
        clock: Callable[[], float] = time.monotonic,
        bot_name: str = "Watson",
        gated: bool = True,
        gate_grace_seconds: float = 5.0,
        queue_choice_timeout: float = 20.0,
        switch_choice_timeout: float = 30.0,
        reject_reprompt_cooldown: float = 4.0,
        failed_wake_cue_cooldown: float = 8.0,
        dependency_alert_cooldown: float = 60.0,
        summary_max_chars: int = 100,
        error_dispatch_failed: str = "Sorry, I couldn't reach the assistant. Try again.",
        error_queue_write: str = "Sorry, I couldn't save that request.",
    ):
        self._transcriber = transcriber
        self._playback = playback
        self._tts = tts
        self._queue = queue
        self._responder = responder
        self._gateway = gateway
        self.poller = poller
        self.channel = channel
        self.history = history or ConversationHistory()
        self.stats = stats or get_health_stats()
        self.state = state or SessionState()
        self._spawn = spawn or self._spawn_background
        self._clock = clock

        self.bot_name = bot_name
        self.gated = gated
        self.gate_grace_seconds = gate_grace_seconds
        self.queue_choice_timeout = queue_choice_timeout
        self.switch_choice_timeout = switch_choice_timeout
        self.reject_reprompt_cooldown = reject_reprompt_cooldown
        self.failed_wake_cue_cooldown = failed_wake_cue_cooldown
        self.dependency_alert_cooldown = dependency_alert_cooldown
        self.summary_max_chars = summary_max_chars
        self.error_dispatch_failed = error_dispatch_failed
        self.error_queue_write = error_queue_write

        self._processing = False
        self._background: set[asyncio.Task] = set()
        self._choice_timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_processing(self) -> bool:
        return self._processing

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    async def handle_utterance(self, speaker_id: str, audio: bytes, duration_ms: float) -> None:
        """Process one finished utterance from the capture side."""
        if self._playback.is_playing() and not self._playback.is_waiting():
            logger.info("Utterance from %s interrupts playback", speaker_id)
            self._playback.stop_playback()

        if self._processing:
            self.stats.incr("utterances_dropped")
            logger.debug("Dropping utterance from %s: still processing", speaker_id)
            return

        self._processing = True
        try:
            await self._process(speaker_id, audio, duration_ms)
        except Exception as e:
            self.stats.incr("errors")
            logger.error("Utterance from %s failed: %s", speaker_id, e, exc_info=True)
        finally:
            self._processing = False

    async def _process(self, speaker_id: str, audio: bytes, duration_ms: float) -> None:
        try:
            transcript = await self._transcriber.transcribe(audio)
        except Exception as e:
            self.stats.incr("stt_failures")
            logger.warning("Transcription failed: %s", e)
            await self._alert_dependency("stt")
            return

        transcript = (transcript or "").strip()
        if not transcript:
            logger.debug("Empty transcript (%.0fms of audio)", duration_ms)
            return
        if intents.is_non_lexical_transcript(transcript):
            logger.debug("Discarding non-lexical transcript: %s", transcript)
            return

        self.stats.incr("utterances_processed")
        logger.info("ASR (%s): %s", speaker_id, transcript)

        choice = self.state.pending_choice
        if choice is not None:
            if self.state.choice_open(self._clock()):
                await self._answer_choice(choice, transcript)
                return
            await self._expire_choice(choice)

        if self.state.waiting_on_response and intents.is_cancel_intent(
            intents.extract_request(transcript, self.bot_name)
        ):
            await self._cancel()
            return

        woke = intents.match_wake_phrase(transcript, self.bot_name)
        if self.gated and not woke and not is_active(self.state.gate_grace_until, self._clock()):
            if intents.should_cue_failed_wake(transcript, self.bot_name):
                await self._cue_failed_wake()
            else:
                logger.debug("Gate closed, ignoring: %s", transcript)
            return

        intent = intents.classify(transcript, self.bot_name)
        if intent.tag == intents.CANCEL:
            await self._cancel()
        elif intent.tag == intents.WAKE:
            self.state.gate_grace_until = self._clock() + self.gate_grace_seconds
            await self._playback.play_earcon(Earcon.LISTENING)
        elif intent.tag == intents.COMMAND:
            self.stats.incr("commands_recognized")
            await self._run_command(intent.value)
        else:
            request = intents.extract_request(transcript, self.bot_name) if woke else transcript
            await self._dispatch(request)

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def _dispatch(self, text: str) -> None:
        mode = self._queue.get_mode()
        channel = self.channel
        self.stats.incr("dispatches")
        logger.info("Dispatching (%s) to %s: %s", mode.value, channel.display_name, text)

        if mode == VoiceMode.WAIT:
            await self._dispatch_and_wait(text, channel)
            return

        try:
            item = self._queue.enqueue(
                channel.channel, channel.display_name, channel.session_key, text
            )
        except StorageError as e:
            logger.error("Could not enqueue request: %s", e)
            await self._playback.play_earcon(Earcon.ERROR)
            await self._speak(self.error_queue_write)
            return

        self._spawn(self._complete_dispatch(item))
        if self.poller is not None:
            self.poller.check()

        if mode == VoiceMode.QUEUE:
            await self._playback.play_earcon(Earcon.ACKNOWLEDGED)
            await self._speak(f"Queued to {channel.display_name}.")
        else:
            self.state.speculative_queue_item_id = item.id
            self._open_choice(
                PendingChoice(
                    kind=ChoiceKind.QUEUE,
                    queue_item_id=item.id,
                    display_name=channel.display_name,
                    reprompt=QUEUE_CHOICE_REPROMPT,
                ),
                self.queue_choice_timeout,
            )
            await self._speak(QUEUE_CHOICE_PROMPT)

    async def _dispatch_and_wait(self, text: str, channel: ActiveChannel) -> None:
        self._playback.start_waiting_loop()
        try:
            response = await self._responder.respond(channel.session_key, text, self.history)
        except Exception as e:
            self.stats.incr("dispatch_failures")
            logger.error("Dispatch to %s failed: %s", channel.display_name, e)
            self._playback.stop_waiting_loop()
            await self._playback.play_earcon(Earcon.ERROR)
            await self._speak(self.error_dispatch_failed)
            return

        self._spawn(self._mirror(channel.session_key, text, response))
        logger.info("Speaking reply: %s", response[:80])
        try:
            await self._speak(response)
        finally:
            if self._playback.is_waiting():
                self._playback.stop_waiting_loop()

    async def _complete_dispatch(self, item: QueueItem) -> None:
        """Settle a queued dispatch. The item never stays pending."""
        try:
            response = await self._responder.respond(item.session_key, item.user_message, self.history)
        except Exception as e:
            self.stats.incr("dispatch_failures")
            logger.error("Queued dispatch %s to %s failed: %s", item.id, item.display_name, e)
            ready = self._settle(item, DISPATCH_FAILURE_SUMMARY, DISPATCH_FAILURE_RESPONSE)
        else:
            ready = self._settle(
                item, summarize_response(response, self.summary_max_chars), response
            )
            if ready is not None:
                await self._mirror(item.session_key, item.user_message, response)

        if self.poller is not None:
            self.poller.check()
        if ready is not None:
            await self.on_item_ready(ready)

    def _settle(self, item: QueueItem, summary: str, response: str) -> Optional[QueueItem]:
        try:
            return self._queue.mark_ready(item.id, summary, response)
        except QueueStateWriteError as e:
            self.stats.incr("errors")
            logger.error("Could not record result for %s: %s", item.id, e)
            return None
        except StorageError as e:
            logger.info("Result for %s not recorded: %s", item.id, e)
            return None

    async def _mirror(self, session_key: str, user_text: str, response: str) -> None:
        if self._gateway is None:
            return
        await self._gateway.inject(session_key, f"{VOICE_USER_PREFIX} {user_text}", label=VOICE_USER_LABEL)
        await self._gateway.inject(session_key, response, label=VOICE_ASSISTANT_LABEL)

    async def on_item_ready(self, item: QueueItem) -> None:
        """Deliver a newly ready item to a waiting listener, or announce it."""
        state = self.state
        if state.active_wait_queue_item_id == item.id and state.waiting_on_response:
            callback = state.pending_wait_callback or self._read_item
            state.clear_wait()
            await callback(item.id)
            return
        if state.speculative_queue_item_id == item.id and state.choice_open(self._clock()):
            # Delivered once the listener picks inbox or wait
            return
        await self.notify_if_idle(
            f"Response ready from {item.display_name}.", full_text=item.response_text
        )

    # ------------------------------------------------------------------ #
    # Choices
    # ------------------------------------------------------------------ #

    def _open_choice(self, choice: PendingChoice, timeout: float) -> None:
        self._cancel_choice_timer()
        self.state.pending_choice = choice
        self.state.prompt_grace_until = self._clock() + timeout
        loop = asyncio.get_running_loop()
        self._choice_timer = loop.call_later(timeout, self._on_choice_timeout, choice)

    def _cancel_choice_timer(self) -> None:
        if self._choice_timer is not None:
            self._choice_timer.cancel()
            self._choice_timer = None

    def _close_choice(self) -> None:
        self._cancel_choice_timer()
        self.state.clear_choice()

    def _on_choice_timeout(self, choice: PendingChoice) -> None:
        self._choice_timer = None
        if self.state.pending_choice is choice:
            self._spawn(self._expire_choice(choice))

    async def _expire_choice(self, choice: PendingChoice) -> None:
        if self.state.pending_choice is not choice:
            return
        self._close_choice()
        logger.info("%s choice timed out", choice.kind.value)
        if choice.kind == ChoiceKind.QUEUE:
            self.state.speculative_queue_item_id = None
            await self._playback.play_earcon(Earcon.TIMEOUT_WARNING)
            item = self._queue.get(choice.queue_item_id) if choice.queue_item_id else None
            if item is not None and item.status == QueueItemStatus.READY:
                await self.notify_if_idle(
                    f"Response ready from {item.display_name}.", full_text=item.response_text
                )

    async def _answer_choice(self, choice: PendingChoice, transcript: str) -> None:
        intent = intents.classify(transcript, self.bot_name, expecting=choice.kind.value)
        if intent.tag == intents.CANCEL or intent.value == "cancel":
            await self._cancel()
        elif intent.tag == intents.QUEUE_CHOICE:
            await self._resolve_queue_choice(choice, intent.value)
        elif intent.tag == intents.SWITCH_CHOICE:
            await self._resolve_switch_choice(choice, intent.value)
        else:
            await self._reprompt(choice)

    async def _resolve_queue_choice(self, choice: PendingChoice, answer: str) -> None:
        self._close_choice()
        self.state.speculative_queue_item_id = None
        item_id = choice.queue_item_id
        item = self._queue.get(item_id) if item_id else None
        if item is None:
            logger.warning("Queue choice answered for missing item %s", item_id)
            return

        if answer == "queue":
            await self._playback.play_earcon(Earcon.ACKNOWLEDGED)
            if item.status == QueueItemStatus.READY:
                await self._speak(f"Response ready from {item.display_name}.")
            else:
                await self._speak(f"Queued to {item.display_name}.")
            return

        if item.status == QueueItemStatus.READY:
            await self._read_item(item.id)
            return

        self.state.active_wait_queue_item_id = item.id
        if answer == "silent":
            self.state.silent_wait = True
            await self._playback.play_earcon(Earcon.ACKNOWLEDGED)
        else:
            self.state.pending_wait_callback = self._read_item
            self._playback.start_waiting_loop()

    async def _resolve_switch_choice(self, choice: PendingChoice, answer: str) -> None:
        self._close_choice()
        if answer == "read" and choice.last_message:
            await self._speak(choice.last_message)
        elif answer == "prompt":
            self.state.gate_grace_until = self._clock() + self.gate_grace_seconds
            await self._playback.play_earcon(Earcon.LISTENING)

    async def _reprompt(self, choice: PendingChoice) -> None:
        now = self._clock()
        if self.state.reject_reprompt_in_flight or is_active(
            self.state.reject_reprompt_cooldown_until, now
        ):
            logger.debug("Reprompt suppressed")
            return
        self.state.reject_reprompt_in_flight = True
        self.state.reject_reprompt_cooldown_until = now + self.reject_reprompt_cooldown
        try:
            await self._playback.play_earcon(Earcon.ERROR)
            await self._speak(choice.reprompt)
        finally:
            self.state.reject_reprompt_in_flight = False

    async def _cancel(self) -> None:
        """Drop choice and wait associations. In-flight dispatches still land in the inbox."""
        self._close_choice()
        self.state.clear_wait()
        if self._playback.is_waiting():
            self._playback.stop_waiting_loop()
        logger.info("Cancelled")
        await self._playback.play_earcon(Earcon.CANCELLED)

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    async def _run_command(self, command: str) -> None:
        logger.info("Command: %s", command)
        if command == intents.INBOX_NEXT:
            await self.read_next()
        elif command == intents.INBOX_CHECK:
            await self._speak(self._inbox_status())
        elif command == intents.REPLAY:
            if self.state.last_spoken_full_text:
                if self.state.last_spoken_was_summary:
                    logger.info("Replay expands the last notification to the full response")
                await self._speak(self.state.last_spoken_full_text)
            else:
                await self._playback.play_earcon(Earcon.ERROR)
        elif command.startswith("mode:"):
            mode = self._queue.set_mode(command.split(":", 1)[1])
            await self._speak(f"{mode.value.capitalize()} mode.")

    async def read_next(self) -> None:
        """Read the oldest ready inbox item in full."""
        item = self._queue.get_next_ready()
        if item is None:
            await self._speak(self._inbox_status())
            return
        await self._read_item(item.id)

    def _inbox_status(self) -> str:
        ready = len(self._queue.get_ready_items())
        pending = len(self._queue.get_pending_items())
        if not ready and not pending:
            return "Your inbox is empty."
        return f"You have {ready} ready and {pending} pending."

    async def _read_item(self, item_id: str) -> None:
        item = self._queue.get(item_id)
        if item is None or item.status != QueueItemStatus.READY:
            return
        if not await self._speak(item.response_text or "", full_text=item.response_text):
            return
        try:
            self._queue.mark_heard(item.id)
        except StorageError as e:
            logger.warning("Could not mark %s heard: %s", item.id, e)

    # ------------------------------------------------------------------ #
    # Channel switching and notifications
    # ------------------------------------------------------------------ #

    async def switch_channel(self, channel: str, display_name: str, session_key: str) -> None:
        """Make ``channel`` the target for new requests and catch up on it."""
        self._close_choice()
        self.channel = ActiveChannel(channel, display_name, session_key)
        logger.info("Active channel: %s (%s)", display_name, session_key)

        item = self._queue.get_ready_by_channel(channel)
        if item is not None:
            await self._read_item(item.id)
            return

        last_message = await self._last_assistant_message(session_key)
        if last_message:
            self._open_choice(
                PendingChoice(
                    kind=ChoiceKind.SWITCH,
                    display_name=display_name,
                    last_message=last_message,
                    reprompt=SWITCH_CHOICE_REPROMPT,
                ),
                self.switch_choice_timeout,
            )
            await self._speak(f"Switched to {display_name}. Read the last message, or new prompt?")
        else:
            await self._speak(f"Switched to {display_name}.")

    async def _last_assistant_message(self, session_key: str) -> Optional[str]:
        if self._gateway is None:
            return None
        messages = await self._gateway.get_history(session_key, 10)
        for message in reversed(messages or []):
            content = message.content.strip()
            if message.role == "assistant" and content and not content.startswith(VOICE_USER_PREFIX):
                return content
        return None

    async def notify_if_idle(self, text: str, *, full_text: Optional[str] = None) -> bool:
        """
        Speak a short notification unless the session is busy.

        When ``full_text`` is given the notification stands in for it, and a
        replay reads the full text.
        """
        if self._processing or self._playback.is_playing() or self.state.idle_notify_in_flight:
            logger.debug("Session busy, skipping notification: %s", text)
            return False
        self.state.idle_notify_in_flight = True
        try:
            await self._playback.play_earcon(Earcon.READY)
            return await self._speak(text, full_text=full_text, was_summary=full_text is not None)
        finally:
            self.state.idle_notify_in_flight = False

    # ------------------------------------------------------------------ #
    # Output
    # ------------------------------------------------------------------ #

    async def _speak(self, text: str, *, full_text: Optional[str] = None, was_summary: bool = False) -> bool:
        """Synthesize and play ``text``. Returns False if nothing was played."""
        if not text:
            return False
        try:
            stream = await self._tts.synthesize(text)
        except TTSError as e:
            self.stats.incr("tts_failures")
            logger.error("Speech unavailable: %s", e)
            if self._playback.is_waiting():
                self._playback.stop_waiting_loop()
            await self._alert_dependency("tts")
            return False

        if self._playback.is_waiting():
            self._playback.stop_waiting_loop()
        self.state.last_playback_text = text
        await self._playback.play_stream(stream)

        now = self._clock()
        self.state.last_playback_completed_at = now
        self.state.last_spoken_text = text
        self.state.last_spoken_full_text = full_text or text
        self.state.last_spoken_was_summary = was_summary
        self.state.gate_grace_until = now + self.gate_grace_seconds
        return True

    async def _cue_failed_wake(self) -> None:
        now = self._clock()
        if self.state.missed_wake_analysis_in_flight or is_active(
            self.state.failed_wake_cue_cooldown_until, now
        ):
            logger.debug("Failed-wake cue suppressed")
            return
        self.state.missed_wake_analysis_in_flight = True
        self.state.failed_wake_cue_cooldown_until = now + self.failed_wake_cue_cooldown
        try:
            self.stats.incr("failed_wake_cues")
            logger.info("Transcript looks like a missed wake phrase")
            await self._playback.play_earcon(Earcon.ERROR)
        finally:
            self.state.missed_wake_analysis_in_flight = False

    async def _alert_dependency(self, dependency: str) -> None:
        now = self._clock()
        if is_active(self.state.dependency_alert_cooldown_until.get(dependency, 0.0), now):
            return
        self.state.dependency_alert_cooldown_until[dependency] = now + self.dependency_alert_cooldown
        await self._playback.play_earcon(Earcon.ERROR)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def _spawn_background(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)

    async def wait_for_background(self) -> None:
        """Wait for spawned dispatches, including ones they spawn."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def stop(self) -> None:
        self._cancel_choice_timer()
        if self._playback.is_waiting():
            self._playback.stop_waiting_loop()
        self.state.reset()
        logger.info("Orchestrator stopped")
