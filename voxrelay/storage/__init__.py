"""
Storage module for voxrelay.

Provides the durable response inbox and its error types.
"""

from .exceptions import (
    InvalidQueueTransitionError,
    QueueItemNotFoundError,
    QueueStateWriteError,
    StorageError,
)
from .queue_store import (
    QueueItem,
    QueueItemStatus,
    QueueStore,
    VoiceMode,
    get_queue_store,
    summarize_response,
)

__all__ = [
    "StorageError",
    "QueueItemNotFoundError",
    "InvalidQueueTransitionError",
    "QueueStateWriteError",
    "QueueItem",
    "QueueItemStatus",
    "QueueStore",
    "VoiceMode",
    "get_queue_store",
    "summarize_response",
]
