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
Connection gateway: upgrades HTTP requests to WebSockets and wires each
connection's lifecycle to the relay.
"""

from typing import Optional

from aiohttp import WSMsgType, web

from chatrelay.logging_config import get_loggers

from .protocol import ProtocolHandler
from .state import ChatRelay

app_logger, access_logger, _ = get_loggers()


class ConnectionGateway:
    """aiohttp handler for the relay's WebSocket endpoint."""

    def __init__(
        self,
        relay: ChatRelay,
        handler: Optional[ProtocolHandler] = None,
        heartbeat: Optional[float] = None,
    ):
        self.relay = relay
        self.handler = handler or ProtocolHandler(relay)
        self.heartbeat = heartbeat

    async def handle(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        if not ws.can_prepare(request).ok:
            return web.Response(
                text="Upgrade Required",
                status=426,
                headers={"Upgrade": "websocket", "Connection": "Upgrade"},
            )
        await ws.prepare(request)

        # Absent or empty usernames are accepted as-is.
        username = request.query.get("username", "")
        client_address_str = request.get("client_address_str", f"{request.remote}")
        request.app["websockets"].add(ws)

        session = await self.relay.join(ws, username)
        access_logger.info(
            f"[{client_address_str}] WebSocket opened",
            extra={"session_id": session.session_id, "username": username},
        )

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self.handler.handle_frame(session.session_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    app_logger.error(
                        f"WebSocket error for {username}: {ws.exception()}",
                        extra={"session_id": session.session_id},
                    )
        finally:
            # Errors end the iteration too, so close and error share this path.
            request.app["websockets"].discard(ws)
            await self.relay.leave(session.session_id)
            access_logger.info(
                f"[{client_address_str}] WebSocket closed",
                extra={
                    "session_id": session.session_id,
                    "username": username,
                    "close_code": ws.close_code,
                },
            )

        return ws
