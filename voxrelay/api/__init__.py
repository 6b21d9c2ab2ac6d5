"""
API routers for voxrelay.
"""

from fastapi import APIRouter

from .health import router as health_router
from .queue import router as queue_router
from .tts import router as tts_router

# Main router that aggregates all sub-routers
router = APIRouter()

router.include_router(health_router)
router.include_router(queue_router)
router.include_router(tts_router)
