"""
Custom exceptions for storage layer.

Provides explicit error types instead of silent failures.
"""


class StorageError(Exception):
    """Base exception for all storage errors."""

    pass


class QueueItemNotFoundError(StorageError):
    """Raised when a queue item id is unknown."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Queue item not found: {item_id}")


class InvalidQueueTransitionError(StorageError):
    """Raised when an item is moved to a status it cannot reach from its current one."""

    def __init__(self, item_id: str, current: str, target: str):
        self.item_id = item_id
        self.current = current
        self.target = target
        super().__init__(
            f"Queue item {item_id} cannot move from '{current}' to '{target}'"
        )


class QueueStateWriteError(StorageError):
    """Raised when the queue state file cannot be written."""

    def __init__(self, path, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write queue state to {path}: {cause}")
