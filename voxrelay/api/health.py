"""
Health check endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..services.gateway_client import GatewayClient
from ..services.health_stats import HealthStats
from ..services.tts_router import TTSRouter
from ..storage import QueueStore
from .dependencies import get_gateway, get_queue, get_stats, get_tts

router = APIRouter(tags=["Health"])


@router.get("/ping")
async def ping():
    """Simple endpoint to verify server is running."""
    return {"status": "ok", "message": "pong"}


@router.get("/health")
async def health(
    queue: QueueStore = Depends(get_queue),
    tts: TTSRouter = Depends(get_tts),
    gateway: Optional[GatewayClient] = Depends(get_gateway),
    stats: HealthStats = Depends(get_stats),
):
    """Gateway, speech routing and inbox status plus pipeline counters."""
    if gateway is None:
        gateway_status = {"enabled": False, "state": "disabled", "connected": False}
    else:
        gateway_status = {
            "enabled": True,
            "state": gateway.state.value,
            "connected": gateway.is_connected,
            "reconnect_attempt": gateway.reconnect_attempt,
            "reconnect_exhausted": gateway.reconnect_exhausted,
            "pending_calls": gateway.pending_count,
        }

    tts_status = {
        "primary": tts.primary,
        "fallback": tts.fallback,
        "override": tts.override,
        "primary_unavailable": tts.primary_unavailable,
    }

    queue_status = {
        "mode": queue.get_mode().value,
        "pending": len(queue.get_pending_items()),
        "ready": len(queue.get_ready_items()),
    }

    status = "healthy"
    if gateway is not None and not gateway.is_connected:
        status = "degraded"

    return {
        "status": status,
        "gateway": gateway_status,
        "tts": tts_status,
        "queue": queue_status,
        "counters": stats.snapshot(),
    }
