# MIT License
#
# Copyright (c) 2025 Timothy J Fontaine
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from .dispatcher import BroadcastDispatcher
from .history import HistoryBuffer
from .models import (
    ChatMessage,
    Session,
    format_timestamp,
    history_payload,
    parse_timestamp,
    users_payload,
)
from .registry import SessionRegistry
from .store import AbstractMessageStore


class ChatRelay:
    """
    Owns the shared relay state: sessions, history and outbound channels.

    Every mutation, together with the frames it produces, runs under a
    single lock. Two concurrent joins therefore cannot interleave their
    roster broadcasts, and a history snapshot always precedes any message
    appended after it on the same connection.
    """

    def __init__(
        self, max_history: int = 100, store: Optional[AbstractMessageStore] = None
    ):
        self.registry = SessionRegistry()
        self.history = HistoryBuffer(max_history=max_history, store=store)
        self.dispatcher = BroadcastDispatcher(self.registry)
        self._lock = asyncio.Lock()
        self._last_moment: Optional[datetime] = None
        self._logger = logging.getLogger("chat_relay_app")

    async def load_history(self) -> int:
        async with self._lock:
            count = await self.history.load()
            last = self.history.last
            if last is not None:
                self._last_moment = parse_timestamp(last.timestamp)
            return count

    async def join(self, connection: Any, username: str) -> Session:
        """Register a connection, send it the history, then broadcast the roster."""
        async with self._lock:
            session_id = self.registry.register(connection, username)
            self.dispatcher.attach(session_id)
            self.dispatcher.send_to(session_id, history_payload(self.history.snapshot()))
            self._broadcast_roster()
            session = self.registry.get(session_id)
        self._logger.info(
            f"{username} connected",
            extra={"session_id": session_id, "online": len(self.registry)},
        )
        return session

    async def leave(self, session_id: str) -> None:
        """Deregister a session and rebroadcast the roster. Unknown ids are a no-op."""
        async with self._lock:
            session = self.registry.deregister(session_id)
            if session is None:
                return
            self.dispatcher.detach(session_id)
            self._broadcast_roster()
        self._logger.info(
            f"{session.username} disconnected",
            extra={"session_id": session_id, "online": len(self.registry)},
        )

    async def post(self, session_id: str, content: str) -> Optional[ChatMessage]:
        """Append a message from the session's user and broadcast it to everyone."""
        async with self._lock:
            session = self.registry.get(session_id)
            if session is None:
                return None
            message = ChatMessage(
                content=content,
                username=session.username,
                timestamp=self._next_timestamp(),
            )
            self.history.append(message)
            self.dispatcher.broadcast_to_all(message.model_dump())
            return message

    async def send_history(self, session_id: str) -> bool:
        async with self._lock:
            return self.dispatcher.send_to(
                session_id, history_payload(self.history.snapshot())
            )

    def roster(self) -> List[str]:
        return self.registry.list_usernames()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        await self.dispatcher.drain(timeout=timeout)
        await self.dispatcher.close()
        await self.history.wait_for_persistence(timeout=timeout)

    def _broadcast_roster(self) -> None:
        self.dispatcher.broadcast_to_all(users_payload(self.registry.list_usernames()))

    def _next_timestamp(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_moment is not None and now < self._last_moment:
            now = self._last_moment
        self._last_moment = now
        return format_timestamp(now)
