"""
Voice pipeline launcher for voxrelay.

Wires a PipelineOrchestrator to the process-wide services built from
settings. The capture side supplies its Transcriber and AudioPlayback.
"""

import logging
from typing import Optional

from ..config import settings
from ..services.gateway_client import channel_session_key, get_gateway_client
from ..services.health_stats import get_health_stats
from ..services.reasoning import ConversationHistory, ReasoningClient
from ..services.response_poller import ResponsePoller
from ..services.tts_router import get_tts_router
from ..storage import get_queue_store
from .orchestrator import ActiveChannel, PipelineOrchestrator
from .playback import AudioPlayback, Transcriber

logger = logging.getLogger("voxrelay.pipeline.launcher")

_orchestrator: Optional[PipelineOrchestrator] = None


def create_orchestrator(
    transcriber: Transcriber,
    playback: AudioPlayback,
    *,
    queue=None,
    tts=None,
    responder=None,
    gateway=None,
    poller: Optional[ResponsePoller] = None,
) -> PipelineOrchestrator:
    """Build an orchestrator from settings, filling in shared services."""
    pipeline_cfg = settings.pipeline
    queue_cfg = settings.queue

    queue = queue or get_queue_store()
    tts = tts or get_tts_router()
    gateway = gateway if gateway is not None else get_gateway_client()
    responder = responder or ReasoningClient.from_settings(settings.gateway, settings.reasoning)

    if poller is None and gateway is not None:
        poller = ResponsePoller(
            queue,
            gateway,
            interval=queue_cfg.poll_interval,
            history_limit=queue_cfg.poll_history_limit,
            summary_max_chars=queue_cfg.summary_max_chars,
        )

    channel = ActiveChannel(
        channel=pipeline_cfg.default_channel,
        display_name=pipeline_cfg.default_channel_display,
        session_key=channel_session_key(settings.gateway.agent_id, pipeline_cfg.default_channel),
    )

    orchestrator = PipelineOrchestrator(
        transcriber=transcriber,
        playback=playback,
        tts=tts,
        queue=queue,
        responder=responder,
        channel=channel,
        gateway=gateway,
        poller=poller,
        history=ConversationHistory(settings.reasoning.max_history),
        stats=get_health_stats(),
        bot_name=pipeline_cfg.bot_name,
        gated=pipeline_cfg.gated,
        gate_grace_seconds=pipeline_cfg.gate_grace_seconds,
        queue_choice_timeout=pipeline_cfg.queue_choice_timeout,
        switch_choice_timeout=pipeline_cfg.switch_choice_timeout,
        reject_reprompt_cooldown=pipeline_cfg.reject_reprompt_cooldown,
        failed_wake_cue_cooldown=pipeline_cfg.failed_wake_cue_cooldown,
        dependency_alert_cooldown=pipeline_cfg.dependency_alert_cooldown,
        summary_max_chars=queue_cfg.summary_max_chars,
    )
    if poller is not None:
        poller.on_ready = orchestrator.on_item_ready
        poller.check()

    logger.info(
        "Voice orchestrator ready (bot=%s, channel=%s, mode=%s)",
        pipeline_cfg.bot_name,
        channel.display_name,
        queue.get_mode().value,
    )
    return orchestrator


def start_voice_pipeline(transcriber: Transcriber, playback: AudioPlayback, **kwargs) -> PipelineOrchestrator:
    """Create and register the process-wide orchestrator."""
    global _orchestrator
    _orchestrator = create_orchestrator(transcriber, playback, **kwargs)
    return _orchestrator


def get_orchestrator() -> Optional[PipelineOrchestrator]:
    return _orchestrator


async def stop_voice_pipeline() -> None:
    """Stop the orchestrator and its poller, letting dispatches finish."""
    global _orchestrator
    if _orchestrator is None:
        return
    orchestrator, _orchestrator = _orchestrator, None
    await orchestrator.wait_for_background()
    if orchestrator.poller is not None:
        await orchestrator.poller.stop()
    await orchestrator.stop()
    logger.info("Voice pipeline stopped")
