"""
voxrelay - voice relay server

The FastAPI application entry point. Serves the control API and owns the
shared gateway, speech and inbox services for the voice pipeline.
"""

# Load .env file FIRST, before any other imports
from pathlib import Path
from dotenv import load_dotenv
_env_root = Path(__file__).parent.parent
load_dotenv(_env_root / ".env")

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api import router as api_router
from .config import settings
from .services.gateway_client import init_gateway_client, shutdown_gateway_client
from .services.tts_router import get_tts_router, shutdown_tts_router
from .storage import get_queue_store

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("voxrelay.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup loads the inbox and connects the gateway; shutdown stops the
    voice pipeline before the services it uses.
    """
    # --- Startup ---
    logger.info("voxrelay starting up...")

    queue = get_queue_store()
    logger.info(
        "Inbox loaded from %s (mode=%s, %d pending)",
        queue.path,
        queue.get_mode().value,
        len(queue.get_pending_items()),
    )

    tts = get_tts_router()
    logger.info("TTS primary=%s fallback=%s", tts.primary, tts.fallback or "none")

    if settings.gateway.enabled:
        await init_gateway_client(settings.gateway)
    else:
        logger.info("Gateway disabled")

    yield

    # --- Shutdown ---
    logger.info("voxrelay shutting down...")

    try:
        from .pipeline.launcher import stop_voice_pipeline
        await stop_voice_pipeline()
    except Exception as e:
        logger.error("Error stopping voice pipeline: %s", e)

    if settings.gateway.enabled:
        try:
            await shutdown_gateway_client()
            logger.info("Gateway client shut down")
        except Exception as e:
            logger.error("Error shutting down gateway client: %s", e)

    try:
        await shutdown_tts_router()
    except Exception as e:
        logger.error("Error closing TTS router: %s", e)

    logger.info("voxrelay shutdown complete")


# Create the FastAPI application
app = FastAPI(
    title="voxrelay",
    description="Voice interaction relay between a listener and a remote agent gateway.",
    version=__version__,
    lifespan=lifespan,
)

# Include API routers with /api/v1 prefix
app.include_router(api_router, prefix="/api/v1")


def run() -> None:
    """Serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "voxrelay.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
