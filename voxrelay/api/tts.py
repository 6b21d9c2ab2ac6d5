"""
Speech backend routing endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..services.tts_router import TTSRouter
from .dependencies import get_tts

router = APIRouter(prefix="/tts", tags=["TTS"])


class OverrideRequest(BaseModel):
    backend: str


def _routing(tts: TTSRouter) -> dict:
    return {
        "primary": tts.primary,
        "fallback": tts.fallback,
        "override": tts.override,
        "primary_unavailable": tts.primary_unavailable,
        "available": tts.available_backends(),
        "order": tts.candidate_order(),
    }


@router.get("/backends")
async def list_backends(tts: TTSRouter = Depends(get_tts)):
    """Configured backends, routing state and recent failures."""
    status = _routing(tts)
    status["failures"] = {
        key: {
            "count": sig.count,
            "first_seen_at": sig.first_seen_at,
            "last_seen_at": sig.last_seen_at,
        }
        for key, sig in tts.failure_signatures().items()
    }
    return status


@router.put("/override")
async def set_override(request: OverrideRequest, tts: TTSRouter = Depends(get_tts)):
    """Pin synthesis to one backend."""
    try:
        tts.set_override(request.backend)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _routing(tts)


@router.delete("/override")
async def clear_override(tts: TTSRouter = Depends(get_tts)):
    tts.clear_override()
    return _routing(tts)
