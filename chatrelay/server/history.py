import asyncio
import logging
from collections import deque
from typing import List, Optional, Set

from .models import ChatMessage
from .store import AbstractMessageStore


class HistoryBuffer:
    """
    Bounded, ordered log of recent chat messages.

    Holds at most `max_history` messages; appending to a full buffer evicts
    the oldest one. When a durable store is attached, every append is also
    forwarded to it as a detached task whose failure is logged and never
    propagated to the caller.

    Mutations are not locked here; `ChatRelay` serializes them.
    """

    def __init__(
        self, max_history: int = 100, store: Optional[AbstractMessageStore] = None
    ):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._messages: deque[ChatMessage] = deque(maxlen=max_history)
        self._store = store
        self._pending: Set[asyncio.Task] = set()
        self._logger = logging.getLogger("chat_history")

    @property
    def max_history(self) -> int:
        return self._messages.maxlen

    @property
    def store(self) -> Optional[AbstractMessageStore]:
        return self._store

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def last(self) -> Optional[ChatMessage]:
        return self._messages[-1] if self._messages else None

    def append(self, message: ChatMessage) -> None:
        """Insert at the tail, evicting the head when full, and persist in the background."""
        self._messages.append(message)
        self._logger.debug(
            "Appended message to history",
            extra={"username": message.username, "size": len(self._messages)},
        )
        if self._store is not None:
            self._schedule_persist(message)

    def snapshot(self) -> List[ChatMessage]:
        """Return the buffer in insertion order, oldest first."""
        return list(self._messages)

    async def load(self) -> int:
        """
        Pre-populate the buffer from the durable store.

        A store failure is logged and leaves the buffer empty.
        """
        if self._store is None:
            return 0
        try:
            recent = await self._store.find_recent(self.max_history)
        except Exception as e:
            self._logger.exception(f"Failed to load history from durable store: {e}")
            return 0

        self._messages.clear()
        self._messages.extend(recent)
        self._logger.info(f"Loaded {len(self._messages)} message(s) from durable store")
        return len(self._messages)

    def _schedule_persist(self, message: ChatMessage) -> None:
        task = asyncio.create_task(self._store.insert_one(message))
        self._pending.add(task)
        task.add_done_callback(self._on_persisted)

    def _on_persisted(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            self._logger.warning("Message persistence was cancelled")
            return
        error = task.exception()
        if error is not None:
            self._logger.error(
                f"Failed to persist message: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    async def wait_for_persistence(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight persistence writes. Intended for shutdown and tests."""
        if not self._pending:
            return
        pending = list(self._pending)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            self._logger.warning(
                f"{len(not_done)} persistence write(s) still pending after {timeout}s"
            )
