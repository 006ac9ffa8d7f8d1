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

"""
Terminal client for the chat relay.

Connects with a username, requests history on every (re)connect, renders
history, messages and the roster, and reconnects a bounded number of times
with a fixed interval when the transport is lost.
"""

import argparse
import asyncio
import sys
from typing import Any, Dict, List, Optional

import aiohttp
from rich.console import Console
from rich.markup import escape

from chatrelay.logging_config import configure_logging, get_loggers
from chatrelay.server.models import format_timestamp

app_logger, _, _ = get_loggers()

DEFAULT_URL = "ws://127.0.0.1:8000/"


class ChatClient:
    """A reconnecting WebSocket chat client."""

    def __init__(
        self,
        url: str,
        username: str,
        reconnect_attempts: int = 10,
        reconnect_interval: float = 3.0,
        console: Optional[Console] = None,
    ):
        self.url = url
        self.username = username
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_interval = reconnect_interval
        self.console = console or Console()
        self.messages: List[Dict[str, Any]] = []
        self.users: List[str] = []
        self.connections_opened = 0
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connected = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout=timeout)

    def handle_payload(self, payload: Any) -> None:
        """Apply one server payload to the local view. Unrecognized shapes are ignored."""
        if not isinstance(payload, dict):
            return
        kind = payload.get("type")
        if kind == "message":
            self.messages.append(payload)
            self._render_message(payload)
        elif kind == "history":
            if isinstance(payload.get("messages"), list):
                self.messages = list(payload["messages"])
                self.console.rule(f"history ({len(self.messages)})")
                for message in self.messages:
                    self._render_message(message)
        elif kind == "users":
            users = payload.get("users")
            if isinstance(users, list):
                self.users = [
                    str(u.get("username", "")) for u in users if isinstance(u, dict)
                ]
                self.console.print(f"[dim]online: {escape(', '.join(self.users))}[/dim]")
        else:
            app_logger.debug(f"Ignoring payload of type {kind!r}")

    async def send_text(self, text: str) -> bool:
        """Send a chat message. Blank input and a missing connection are no-ops."""
        content = text.strip()
        if not content or not self.connected:
            return False
        try:
            await self._ws.send_json(
                {
                    "type": "message",
                    "content": content,
                    "username": self.username,
                    "timestamp": format_timestamp(),
                }
            )
        except ConnectionResetError as e:
            app_logger.warning(f"Message not sent, connection lost: {e}")
            return False
        return True

    async def run(self, stop: Optional[asyncio.Event] = None) -> bool:
        """
        Connect and process payloads until `stop` is set.

        Returns False when the reconnect budget is exhausted.
        """
        stop = stop or asyncio.Event()
        failures = 0
        async with aiohttp.ClientSession() as session:
            while not stop.is_set():
                try:
                    async with session.ws_connect(
                        self.url, params={"username": self.username}
                    ) as ws:
                        failures = 0
                        await self._serve(ws, stop)
                except (aiohttp.ClientError, ConnectionResetError) as e:
                    app_logger.warning(f"Connection to {self.url} failed: {e}")
                finally:
                    self._ws = None
                    self._connected.clear()

                if stop.is_set():
                    break
                failures += 1
                if failures > self.reconnect_attempts:
                    app_logger.error(
                        f"Giving up after {self.reconnect_attempts} reconnect attempt(s)"
                    )
                    return False
                app_logger.info(
                    f"Reconnecting in {self.reconnect_interval}s "
                    f"({failures}/{self.reconnect_attempts})"
                )
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.reconnect_interval)
                except asyncio.TimeoutError:
                    pass
        return True

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse, stop: asyncio.Event):
        self._ws = ws
        self.connections_opened += 1
        self._connected.set()
        await ws.send_json({"type": "get_history", "username": self.username})

        stop_task = asyncio.create_task(stop.wait())
        try:
            while True:
                receive_task = asyncio.create_task(ws.receive())
                done, _ = await asyncio.wait(
                    {receive_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_task in done:
                    receive_task.cancel()
                    await asyncio.gather(receive_task, return_exceptions=True)
                    await ws.close()
                    return
                msg = receive_task.result()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self.handle_payload(msg.json())
                    except ValueError:
                        app_logger.warning("Received a frame that is not JSON")
                elif msg.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.CLOSED,
                    aiohttp.WSMsgType.ERROR,
                ):
                    app_logger.info("Disconnected from relay")
                    return
        finally:
            stop_task.cancel()

    def _render_message(self, message: Dict[str, Any]) -> None:
        self.console.print(
            f"[dim]{escape(str(message.get('timestamp', '')))}[/dim] "
            f"[bold]{escape(str(message.get('username', '')))}[/bold]: "
            f"{escape(str(message.get('content', '')))}",
            highlight=False,
        )


async def _interactive(args: argparse.Namespace) -> int:
    client = ChatClient(
        args.url,
        args.username,
        reconnect_attempts=args.reconnect_attempts,
        reconnect_interval=args.reconnect_interval,
    )
    stop = asyncio.Event()
    client_task = asyncio.create_task(client.run(stop))

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    while not client_task.done():
        line_task = asyncio.create_task(reader.readline())
        done, _ = await asyncio.wait(
            {line_task, client_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if line_task not in done:
            line_task.cancel()
            break
        line = line_task.result()
        if not line:
            break
        await client.send_text(line.decode("utf-8", "replace"))

    stop.set()
    ok = await client_task
    return 0 if ok else 1


def run():
    parser = argparse.ArgumentParser(description="Chat relay terminal client")
    parser.add_argument("--url", default=DEFAULT_URL, help="Relay WebSocket URL")
    parser.add_argument("--username", required=True, help="Name shown to others")
    parser.add_argument(
        "--reconnect-attempts",
        type=int,
        default=10,
        help="Reconnect attempts after the connection is lost",
    )
    parser.add_argument(
        "--reconnect-interval",
        type=float,
        default=3.0,
        help="Seconds to wait between reconnect attempts",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    args = parser.parse_args()

    configure_logging(args.log_level)
    sys.exit(asyncio.run(_interactive(args)))


if __name__ == "__main__":
    run()
