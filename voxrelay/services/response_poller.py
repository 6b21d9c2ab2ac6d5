"""
Background poller that settles pending inbox items from gateway history.

A pending item normally becomes ready when its own dispatch finishes. If
that dispatch was lost (restart, dropped connection) the answer can still
show up in the gateway conversation; the poller watches for it while any
item is pending and stops once none are.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from ..storage import QueueItem, QueueStateWriteError, QueueStore, StorageError, summarize_response

logger = logging.getLogger("voxrelay.services.response_poller")

VOICE_USER_PREFIX = "[voice-user]"


def find_reply(messages, since_ms: float) -> Optional[str]:
    """
    Latest assistant text that is not a mirrored user turn.

    Messages stamped before ``since_ms`` are skipped. Untimestamped ones count.
    """
    for message in reversed(messages):
        if message.role != "assistant":
            continue
        content = message.content.strip()
        if not content or content.startswith(VOICE_USER_PREFIX):
            continue
        if message.timestamp is not None and message.timestamp < since_ms:
            continue
        return content
    return None


class ResponsePoller:
    """Polls gateway history for replies to pending inbox items."""

    def __init__(
        self,
        queue: QueueStore,
        gateway,
        interval: float = 5.0,
        history_limit: int = 5,
        summary_max_chars: int = 100,
        on_ready: Optional[Callable[[QueueItem], Any]] = None,
    ):
        self._queue = queue
        self._gateway = gateway
        self._interval = interval
        self._history_limit = history_limit
        self._summary_max_chars = summary_max_chars
        self.on_ready = on_ready
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def check(self) -> None:
        """Start polling if anything is pending; stop if nothing is."""
        if self._queue.get_pending_items():
            if not self.is_running:
                logger.debug("Response poller started")
                self._task = asyncio.create_task(self._run())
        elif self.is_running and self._task is not asyncio.current_task():
            logger.debug("Response poller stopped: nothing pending")
            self._task.cancel()
            self._task = None

    async def poll(self) -> int:
        """One pass over pending items. Returns how many became ready."""
        settled = 0
        for item in self._queue.get_pending_items():
            messages = await self._gateway.get_history(item.session_key, self._history_limit)
            if not messages:
                continue
            reply = find_reply(messages, item.created_at)
            if reply is None:
                continue

            try:
                ready = self._queue.mark_ready(
                    item.id,
                    summarize_response(reply, self._summary_max_chars),
                    reply,
                )
            except QueueStateWriteError as e:
                logger.error("Poller could not record reply for %s: %s", item.id, e)
                continue
            except StorageError as e:
                # Dispatch completion got there first
                logger.debug("Poller skipped %s: %s", item.id, e)
                continue

            settled += 1
            logger.info("Poller found reply for %s (%s)", item.id, item.display_name)
            if self.on_ready is not None:
                try:
                    result = self.on_ready(ready)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.warning("Poller ready callback failed for %s: %s", item.id, e)
        return settled

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                if not self._queue.get_pending_items():
                    logger.debug("Response poller idle: nothing pending")
                    return
                await self.poll()
        finally:
            if self._task is asyncio.current_task():
                self._task = None

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
