"""
External services for voxrelay.

This module provides:
- Gateway WebSocket RPC client
- Speech synthesis backends and the failover router
- Reasoning client and conversation history
- Inbox response poller and health counters
"""

from .gateway_client import (
    GatewayClient,
    GatewayError,
    get_gateway_client,
    init_gateway_client,
    shutdown_gateway_client,
)
from .health_stats import HealthStats, get_health_stats
from .reasoning import ConversationHistory, ReasoningClient, ReasoningError
from .response_poller import ResponsePoller
from .tts_backends import TTSBackendError, TTSError, TTSUnavailableError
from .tts_router import TTSRouter, get_tts_router, shutdown_tts_router

__all__ = [
    # Gateway
    "GatewayClient",
    "GatewayError",
    "get_gateway_client",
    "init_gateway_client",
    "shutdown_gateway_client",
    # Health
    "HealthStats",
    "get_health_stats",
    # Reasoning
    "ConversationHistory",
    "ReasoningClient",
    "ReasoningError",
    # Inbox
    "ResponsePoller",
    # Speech
    "TTSError",
    "TTSBackendError",
    "TTSUnavailableError",
    "TTSRouter",
    "get_tts_router",
    "shutdown_tts_router",
]
