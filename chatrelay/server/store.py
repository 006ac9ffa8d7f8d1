import abc
import asyncio
import logging
import os
from collections import deque
from typing import Deque, List

import aiofiles
from pydantic import ValidationError

from .errors import StoreError
from .models import ChatMessage


class AbstractMessageStore(abc.ABC):
    """Abstract base class for the durable, append-only message log."""

    @abc.abstractmethod
    async def insert_one(self, message: ChatMessage) -> None:
        """Append a single message to the durable log."""
        pass

    @abc.abstractmethod
    async def find_recent(self, limit: int) -> List[ChatMessage]:
        """Return the most recent `limit` messages, oldest first."""
        pass

    async def close(self) -> None:
        """Release any resources held by the store."""
        pass


class InMemoryMessageStore(AbstractMessageStore):
    """In-memory implementation of the message store."""

    def __init__(self):
        self._messages: List[ChatMessage] = []
        self._lock = asyncio.Lock()

    async def insert_one(self, message: ChatMessage) -> None:
        async with self._lock:
            self._messages.append(message)

    async def find_recent(self, limit: int) -> List[ChatMessage]:
        async with self._lock:
            ordered = sorted(self._messages, key=lambda m: m.timestamp)
            return ordered[-limit:] if limit > 0 else []

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)


class JsonlMessageStore(AbstractMessageStore):
    """
    Stores messages as one JSON object per line in a local file.

    Writes are serialized through a lock so concurrent appends never
    interleave within a line.
    """

    def __init__(self, path: str):
        self._path = path
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger("chat_history")

    @property
    def path(self) -> str:
        return self._path

    async def insert_one(self, message: ChatMessage) -> None:
        line = message.model_dump_json() + "\n"
        try:
            async with self._lock:
                directory = os.path.dirname(os.path.abspath(self._path))
                os.makedirs(directory, exist_ok=True)
                async with aiofiles.open(self._path, "a", encoding="utf-8") as f:
                    await f.write(line)
        except OSError as e:
            raise StoreError(f"Failed to append message to {self._path}: {e}") from e

    async def find_recent(self, limit: int) -> List[ChatMessage]:
        if limit <= 0 or not os.path.exists(self._path):
            return []

        # The log is written in timestamp order, so only the tail is kept.
        messages: Deque[ChatMessage] = deque(maxlen=limit)
        try:
            async with self._lock:
                async with aiofiles.open(self._path, "r", encoding="utf-8") as f:
                    line_number = 0
                    async for line in f:
                        line_number += 1
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            messages.append(ChatMessage.model_validate_json(line))
                        except ValidationError:
                            self._logger.warning(
                                "Skipping unreadable line in message log",
                                extra={"path": self._path, "line": line_number},
                            )
        except OSError as e:
            raise StoreError(f"Failed to read message log {self._path}: {e}") from e

        return sorted(messages, key=lambda m: m.timestamp)
