"""
Response inbox endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..storage import QueueItemStatus, QueueStore, StorageError, VoiceMode
from .dependencies import get_queue

router = APIRouter(prefix="/queue", tags=["Queue"])


class ModeRequest(BaseModel):
    mode: VoiceMode


@router.get("")
async def list_items(
    status: Optional[QueueItemStatus] = None,
    queue: QueueStore = Depends(get_queue),
):
    """Inbox items oldest first, optionally filtered by status."""
    items = queue.items()
    if status is not None:
        items = [item for item in items if item.status == status]
    return {
        "mode": queue.get_mode().value,
        "count": len(items),
        "items": [item.model_dump(mode="json", by_alias=True) for item in items],
    }


@router.get("/mode")
async def get_mode(queue: QueueStore = Depends(get_queue)):
    return {"mode": queue.get_mode().value}


@router.put("/mode")
async def set_mode(request: ModeRequest, queue: QueueStore = Depends(get_queue)):
    """Change how new requests are dispatched."""
    try:
        mode = queue.set_mode(request.mode)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=f"Failed to save mode: {e}")
    return {"mode": mode.value}
