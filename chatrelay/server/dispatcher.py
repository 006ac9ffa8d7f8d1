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
import json
import logging
from typing import Any, Dict, Optional

from .models import Session
from .registry import SessionRegistry


class _Channel:
    """Outbound FIFO for one session, drained by its own writer task."""

    __slots__ = ("session", "queue", "task")

    def __init__(self, session: Session, queue: asyncio.Queue, task: asyncio.Task):
        self.session = session
        self.queue = queue
        self.task = task


class BroadcastDispatcher:
    """
    Delivers payloads to registered connections.

    Sends only enqueue onto a per-session channel and never wait for the
    network, so a slow receiver delays nobody but itself. Each channel is
    drained in order by a dedicated writer task. Connections that are no
    longer open are skipped silently.
    """

    def __init__(self, registry: SessionRegistry):
        self._registry = registry
        self._channels: Dict[str, _Channel] = {}
        self._logger = logging.getLogger("chat_relay_app")

    def attach(self, session_id: str) -> bool:
        """Open an outbound channel for a registered session."""
        session = self._registry.get(session_id)
        if session is None or session_id in self._channels:
            return False
        # Unbounded: a peer with a full TCP window accumulates frames here
        # until its transport closes and the channel is detached.
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(
            self._pump(session, queue), name=f"chat-relay-writer-{session_id}"
        )
        self._channels[session_id] = _Channel(session, queue, task)
        return True

    def detach(self, session_id: str) -> None:
        """Stop the writer for a session and drop anything still queued."""
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        channel.task.cancel()
        dropped = 0
        while not channel.queue.empty():
            channel.queue.get_nowait()
            channel.queue.task_done()
            dropped += 1
        if dropped:
            self._logger.debug(
                f"Dropped {dropped} queued frame(s) on detach",
                extra={"session_id": session_id},
            )

    def broadcast_to_all(self, payload: Dict[str, Any]) -> int:
        """Queue a payload for every registered session. Returns how many accepted it."""
        data = json.dumps(payload)
        delivered = 0
        for session in self._registry.sessions():
            if self._enqueue(session.session_id, data):
                delivered += 1
        return delivered

    def send_to(self, session_id: str, payload: Dict[str, Any]) -> bool:
        """Queue a payload for exactly one session. Unknown or closed recipients are skipped."""
        if session_id not in self._registry:
            return False
        return self._enqueue(session_id, json.dumps(payload))

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued frame has been handed to its transport."""
        joins = [channel.queue.join() for channel in list(self._channels.values())]
        if not joins:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*joins), timeout=timeout)
        except asyncio.TimeoutError:
            self._logger.warning(f"Outbound queues not drained after {timeout}s")
            return False
        return True

    async def close(self) -> None:
        """Cancel every writer task."""
        channels = list(self._channels.values())
        for session_id in list(self._channels):
            self.detach(session_id)
        await asyncio.gather(*(c.task for c in channels), return_exceptions=True)

    def _enqueue(self, session_id: str, data: str) -> bool:
        channel = self._channels.get(session_id)
        if channel is None or _is_closed(channel.session.connection):
            return False
        channel.queue.put_nowait(data)
        return True

    async def _pump(self, session: Session, queue: asyncio.Queue) -> None:
        connection = session.connection
        while True:
            data = await queue.get()
            try:
                if not _is_closed(connection):
                    await connection.send_str(data)
            except Exception as e:
                self._logger.debug(
                    f"Dropping frame for unreachable connection: {e}",
                    extra={"session_id": session.session_id},
                )
            finally:
                queue.task_done()


def _is_closed(connection: Any) -> bool:
    return bool(getattr(connection, "closed", False))
