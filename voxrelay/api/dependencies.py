"""
FastAPI dependencies for service injection.

Endpoints take the process-wide services through these so tests can
swap them with ``app.dependency_overrides``.
"""

from typing import Optional

from ..services.gateway_client import GatewayClient, get_gateway_client
from ..services.health_stats import HealthStats, get_health_stats
from ..services.tts_router import TTSRouter, get_tts_router
from ..storage import QueueStore, get_queue_store


def get_queue() -> QueueStore:
    return get_queue_store()


def get_tts() -> TTSRouter:
    return get_tts_router()


def get_gateway() -> Optional[GatewayClient]:
    """The gateway client, or None when the gateway is disabled."""
    return get_gateway_client()


def get_stats() -> HealthStats:
    return get_health_stats()
