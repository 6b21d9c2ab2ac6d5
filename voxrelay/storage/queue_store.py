"""
Durable response inbox.

Requests dispatched in queue mode are recorded here as ``pending`` items and
move to ``ready`` once the answer arrives and to ``heard`` once it has been
spoken. The whole state (items plus the wait/queue mode flag) lives in one
JSON file that is rewritten after every mutation, so a restart never loses a
committed item.

File layout::

    {"mode": "wait", "items": [{"id": ..., "displayName": ..., ...}]}
"""

import json
import logging
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .exceptions import (
    InvalidQueueTransitionError,
    QueueItemNotFoundError,
    QueueStateWriteError,
)

logger = logging.getLogger("voxrelay.storage.queue_store")


class VoiceMode(str, Enum):
    """How a new request is delivered."""

    WAIT = "wait"
    QUEUE = "queue"
    ASK = "ask"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    HEARD = "heard"


# Allowed forward moves
_NEXT_STATUS = {
    QueueItemStatus.PENDING: QueueItemStatus.READY,
    QueueItemStatus.READY: QueueItemStatus.HEARD,
}


class QueueItem(BaseModel):
    """A dispatched request waiting to be heard."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    channel: str
    display_name: str
    session_key: str
    user_message: str
    status: QueueItemStatus = QueueItemStatus.PENDING
    created_at: int = Field(description="Enqueue time in epoch milliseconds")
    summary: Optional[str] = None
    response_text: Optional[str] = None

    @model_validator(mode="after")
    def _ready_items_carry_response(self) -> "QueueItem":
        if self.status != QueueItemStatus.PENDING:
            if self.summary is None or self.response_text is None:
                raise ValueError(
                    f"{self.status.value} item {self.id} needs both summary and responseText"
                )
        return self


def _now_ms() -> int:
    return int(time.time() * 1000)


def summarize_response(text: str, max_chars: int = 100) -> str:
    """Short spoken form of a response."""
    text = text.strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


class QueueStore:
    """
    JSON-file backed inbox of dispatched requests.

    Single writer: all calls are expected from one process, one event loop.
    """

    def __init__(self, path: Union[str, Path], heard_retention: int = 50):
        self._path = Path(path).expanduser()
        self._heard_retention = heard_retention
        self._mode = VoiceMode.WAIT
        self._items: list[QueueItem] = []
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def _load(self) -> None:
        """Load state from disk. A missing file is an empty inbox in wait mode."""
        if not self._path.exists():
            return
        try:
            with open(self._path) as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to read queue state %s: %s", self._path, e)
            return
        if not isinstance(raw, dict):
            logger.warning("Ignoring queue state %s: expected an object", self._path)
            return

        try:
            self._mode = VoiceMode(raw.get("mode", VoiceMode.WAIT.value))
        except ValueError:
            logger.warning("Unknown voice mode %r in %s, using wait", raw.get("mode"), self._path)

        items = []
        for entry in raw.get("items", []):
            try:
                items.append(QueueItem.model_validate(entry))
            except ValidationError as e:
                logger.warning("Skipping invalid queue item in %s: %s", self._path, e)
        items.sort(key=lambda i: i.created_at)
        self._items = items
        logger.info(
            "Loaded queue state from %s (mode=%s, items=%d)",
            self._path, self._mode.value, len(items),
        )

    def _commit(self, items: list[QueueItem], mode: VoiceMode) -> None:
        """Write the full state, then make it the in-memory state."""
        data = {
            "mode": mode.value,
            "items": [i.model_dump(mode="json", by_alias=True) for i in items],
        }
        tmp_path = self._path.with_suffix(".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(self._path)
        except OSError as e:
            logger.error("Failed to write queue state %s: %s", self._path, e)
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            raise QueueStateWriteError(self._path, e) from e
        self._items = items
        self._mode = mode

    # ------------------------------------------------------------------ #
    # Mode
    # ------------------------------------------------------------------ #

    def get_mode(self) -> VoiceMode:
        return self._mode

    def set_mode(self, mode: Union[VoiceMode, str]) -> VoiceMode:
        mode = VoiceMode(mode)
        self._commit(list(self._items), mode)
        logger.info("Voice mode set to %s", mode.value)
        return mode

    # ------------------------------------------------------------------ #
    # Items
    # ------------------------------------------------------------------ #

    def enqueue(
        self,
        channel: str,
        display_name: str,
        session_key: str,
        user_message: str,
    ) -> QueueItem:
        """Record a newly dispatched request as pending."""
        created_at = _now_ms()
        if self._items:
            # Strictly increasing so oldest-first ordering is never ambiguous
            created_at = max(created_at, max(i.created_at for i in self._items) + 1)

        item = QueueItem(
            id=str(uuid.uuid4()),
            channel=channel,
            display_name=display_name,
            session_key=session_key,
            user_message=user_message,
            created_at=created_at,
        )
        self._commit(self._items + [item], self._mode)
        logger.info("Enqueued %s for %s", item.id, display_name)
        return item

    def mark_ready(self, item_id: str, summary: str, response_text: str) -> QueueItem:
        """Move a pending item to ready with its spoken summary and full text."""
        item = self._transition(
            item_id,
            QueueItemStatus.READY,
            summary=summary,
            response_text=response_text,
        )
        logger.info("Queue item %s ready (%s)", item_id, item.display_name)
        return item

    def mark_heard(self, item_id: str) -> QueueItem:
        """Move a ready item to heard and prune old heard items."""
        item = self._transition(item_id, QueueItemStatus.HEARD)
        self.prune_heard(self._heard_retention)
        logger.debug("Queue item %s heard", item_id)
        return item

    def _transition(self, item_id: str, target: QueueItemStatus, **updates) -> QueueItem:
        index = self._index_of(item_id)
        current = self._items[index]
        if _NEXT_STATUS.get(current.status) != target:
            raise InvalidQueueTransitionError(item_id, current.status.value, target.value)

        updated = current.model_copy(update={"status": target, **updates})
        items = list(self._items)
        items[index] = updated
        self._commit(items, self._mode)
        return updated

    def _index_of(self, item_id: str) -> int:
        for index, item in enumerate(self._items):
            if item.id == item_id:
                return index
        raise QueueItemNotFoundError(item_id)

    def prune_heard(self, keep: int) -> int:
        """Drop all but the newest ``keep`` heard items. Returns how many were removed."""
        heard = [i for i in self._items if i.status == QueueItemStatus.HEARD]
        if len(heard) <= keep:
            return 0
        drop = {i.id for i in heard[: len(heard) - keep]}
        self._commit([i for i in self._items if i.id not in drop], self._mode)
        return len(drop)

    def get(self, item_id: str) -> Optional[QueueItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def items(self) -> list[QueueItem]:
        return list(self._items)

    def get_pending_items(self) -> list[QueueItem]:
        return self._with_status(QueueItemStatus.PENDING)

    def get_ready_items(self) -> list[QueueItem]:
        return self._with_status(QueueItemStatus.READY)

    def get_next_ready(self) -> Optional[QueueItem]:
        """Oldest ready item, by enqueue time."""
        ready = self.get_ready_items()
        return ready[0] if ready else None

    def get_ready_by_channel(self, channel: str) -> Optional[QueueItem]:
        for item in self.get_ready_items():
            if item.channel == channel:
                return item
        return None

    def _with_status(self, status: QueueItemStatus) -> list[QueueItem]:
        return sorted(
            (i for i in self._items if i.status == status),
            key=lambda i: i.created_at,
        )


# Module-level instance management
_queue_store: Optional[QueueStore] = None


def get_queue_store() -> QueueStore:
    """Get or create the process-wide queue store."""
    global _queue_store
    if _queue_store is None:
        from ..config import settings

        _queue_store = QueueStore(
            settings.queue.state_path,
            heard_retention=settings.queue.heard_retention,
        )
    return _queue_store
