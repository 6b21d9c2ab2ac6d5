"""
Centralized configuration management using Pydantic Settings.

Configuration is loaded from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewayConfig(BaseSettings):
    """Remote reasoning gateway connection."""

    model_config = SettingsConfigDict(env_prefix="VOXRELAY_GATEWAY_", env_file=".env", extra="ignore")

    enabled: bool = Field(default=True, description="Connect to the gateway on startup")
    url: str = Field(default="http://localhost:18789", description="Gateway base URL (http or ws)")
    token: Optional[str] = Field(default=None, description="Gateway bearer token")
    agent_id: str = Field(default="main", description="Gateway agent that owns voice conversations")

    # Handshake identity
    client_id: str = Field(default="gateway-client", description="Client id sent in the connect request")
    client_mode: str = Field(default="backend", description="Client mode sent in the connect request")
    client_version: str = Field(default="1.0.0", description="Client version sent in the connect request")
    min_protocol: int = Field(default=3, description="Lowest protocol version accepted")
    max_protocol: int = Field(default=3, description="Highest protocol version accepted")
    scopes: list[str] = Field(default=["operator.admin"], description="Capability scopes requested")

    # RPC and reconnect policy
    rpc_timeout: float = Field(default=10.0, description="Seconds before an RPC call times out")
    reconnect_base_delay: float = Field(default=1.0, description="First reconnect delay in seconds")
    reconnect_max_delay: float = Field(default=30.0, description="Reconnect delay cap in seconds")
    max_reconnect_attempts: int = Field(default=10, description="Consecutive reconnect failures before giving up")


class ReasoningConfig(BaseSettings):
    """Chat completions call used to answer voice requests."""

    model_config = SettingsConfigDict(env_prefix="VOXRELAY_REASONING_", env_file=".env", extra="ignore")

    model: Optional[str] = Field(
        default=None,
        description="Model name sent to the gateway (defaults to openclaw:<agent_id>)",
    )
    max_tokens: int = Field(default=300, description="Max tokens per spoken answer")
    max_history: int = Field(default=20, description="Messages kept per conversation")
    timeout: float = Field(default=60.0, description="HTTP timeout in seconds")
    retries: int = Field(default=2, description="Retries on connection failures")
    retry_backoff: float = Field(default=0.5, description="Fixed delay between retries in seconds")
    system_prompt: str = Field(
        default=(
            "You are a voice assistant. Answers are spoken aloud, so keep them "
            "short, plain and free of markdown."
        ),
        description="System prompt prepended to every request",
    )


class TTSConfig(BaseSettings):
    """Speech synthesis backends and failover."""

    model_config = SettingsConfigDict(env_prefix="VOXRELAY_TTS_", env_file=".env", extra="ignore")

    backend: str = Field(default="elevenlabs", description="Primary backend: elevenlabs, kokoro or chatterbox")
    fallback_backend: str = Field(default="", description="Optional fallback backend")
    primary_retry_seconds: float = Field(
        default=30.0,
        description="How long a failed primary is skipped before being tried first again",
    )
    timeout: float = Field(default=30.0, description="HTTP timeout per synthesis request")
    retries: int = Field(default=1, description="Retries on connection failures")
    retry_backoff: float = Field(default=0.25, description="Fixed delay between retries in seconds")

    elevenlabs_api_key: Optional[str] = Field(default=None, description="ElevenLabs API key")
    elevenlabs_voice_id: str = Field(default="JBFqnCBsd6RMkjVDRZzb", description="ElevenLabs voice id")
    elevenlabs_model: str = Field(default="eleven_multilingual_v2", description="ElevenLabs model id")

    kokoro_url: Optional[str] = Field(default="http://127.0.0.1:8880", description="Kokoro server URL")
    kokoro_voice: str = Field(default="af_bella", description="Kokoro voice")

    chatterbox_url: Optional[str] = Field(default="http://127.0.0.1:4123", description="Chatterbox server URL")
    chatterbox_voice: str = Field(default="default", description="Chatterbox voice")


class QueueConfig(BaseSettings):
    """Durable response inbox."""

    model_config = SettingsConfigDict(env_prefix="VOXRELAY_QUEUE_", env_file=".env", extra="ignore")

    state_path: Path = Field(
        default=Path("data/voice-queue-state.json"),
        description="JSON file holding the inbox mode and items",
    )
    heard_retention: int = Field(default=50, description="Heard items kept for history")
    poll_interval: float = Field(default=5.0, description="Seconds between gateway history polls")
    poll_history_limit: int = Field(default=5, description="Messages fetched per poll")
    summary_max_chars: int = Field(default=100, description="Length of the spoken summary")


class PipelineConfig(BaseSettings):
    """Per-session voice interaction behaviour."""

    model_config = SettingsConfigDict(env_prefix="VOXRELAY_PIPELINE_", env_file=".env", extra="ignore")

    bot_name: str = Field(default="Watson", description="Wake name the assistant answers to")
    gated: bool = Field(default=True, description="Require the wake phrase outside grace periods")
    gate_grace_seconds: float = Field(default=5.0, description="Wake-free window after the assistant speaks")
    queue_choice_timeout: float = Field(default=20.0, description="Seconds to answer 'inbox or wait'")
    switch_choice_timeout: float = Field(default=30.0, description="Seconds to answer 'read or prompt'")
    reject_reprompt_cooldown: float = Field(default=4.0, description="Min seconds between reprompts")
    failed_wake_cue_cooldown: float = Field(default=8.0, description="Min seconds between failed-wake cues")
    dependency_alert_cooldown: float = Field(default=60.0, description="Min seconds between STT/TTS alerts")
    default_channel: str = Field(default="general", description="Channel new requests go to")
    default_channel_display: str = Field(default="General", description="Spoken name of the default channel")


class Settings(BaseSettings):
    """Application-wide settings."""

    model_config = SettingsConfigDict(
        env_prefix="VOXRELAY_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    host: str = Field(default="127.0.0.1", description="Control API bind address")
    port: int = Field(default=8765, description="Control API port")

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    tts: TTSConfig = Field(default_factory=TTSConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)


# Singleton settings instance
settings = Settings()
