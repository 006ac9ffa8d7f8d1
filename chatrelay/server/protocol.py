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
Inbound frame protocol for the chat relay.

Frames are JSON objects carrying a `type` discriminator. Parsing turns a
raw frame into one of a closed set of variants; the handler then maps each
variant onto an operation of the relay. Every frame is handled on its own:
nothing about a previous frame affects how the next one is treated, and no
failure while handling a frame ever closes the connection.
"""

import json
from typing import Dict, Type, Union

from pydantic import BaseModel, ValidationError

from chatrelay.logging_config import get_loggers

from .errors import FrameParseError
from .models import GetHistory, InboundFrame, PostMessage, UnknownFrame
from .state import ChatRelay

app_logger, _, _ = get_loggers()

FRAME_TYPES: Dict[str, Type[BaseModel]] = {
    "message": PostMessage,
    "get_history": GetHistory,
}

RAW_PREVIEW_LIMIT = 200


def parse_frame(data: Union[str, bytes]) -> InboundFrame:
    """
    Parse a raw frame into PostMessage, GetHistory or UnknownFrame.

    Raises:
        FrameParseError: if the frame is not UTF-8, not JSON, not a JSON
            object, or a recognized type with invalid fields.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameParseError(f"Frame is not valid UTF-8: {e}", raw=data) from e

    try:
        decoded = json.loads(data)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"Frame is not valid JSON: {e}", raw=data) from e

    if not isinstance(decoded, dict):
        raise FrameParseError(
            f"Frame must be a JSON object, got {type(decoded).__name__}", raw=data
        )

    frame_type = decoded.get("type")
    model = FRAME_TYPES.get(frame_type) if isinstance(frame_type, str) else None
    if model is None:
        return UnknownFrame(type=frame_type, raw=decoded)

    # A `message` whose content is not a string is malformed, never coerced.
    try:
        return model.model_validate(decoded)
    except ValidationError as e:
        raise FrameParseError(
            f"Invalid '{frame_type}' frame: {e.error_count()} error(s)", raw=data
        ) from e


class ProtocolHandler:
    """Dispatches inbound frames for a connection to the relay."""

    def __init__(self, relay: ChatRelay):
        self.relay = relay

    async def handle_frame(self, session_id: str, data: Union[str, bytes]) -> None:
        """
        Handle one inbound frame. Never raises: parse and handling errors are
        logged and the frame is discarded.
        """
        try:
            frame = parse_frame(data)
        except FrameParseError as e:
            app_logger.error(
                f"Discarding malformed frame: {e}",
                extra={"session_id": session_id, "raw": _preview(e.raw)},
            )
            return

        try:
            await self.dispatch(session_id, frame)
        except Exception as e:
            app_logger.exception(
                f"Error handling '{frame.type}' frame: {e}",
                extra={"session_id": session_id},
            )

    async def dispatch(self, session_id: str, frame: InboundFrame) -> None:
        if isinstance(frame, PostMessage):
            message = await self.relay.post(session_id, frame.content)
            if message is None:
                app_logger.warning(
                    "Dropping message from unregistered session",
                    extra={"session_id": session_id},
                )
        elif isinstance(frame, GetHistory):
            await self.relay.send_history(session_id)
        else:
            app_logger.warning(
                f"Unknown message type: {frame.type}",
                extra={"session_id": session_id},
            )


def _preview(raw: Union[str, bytes, None], limit: int = RAW_PREVIEW_LIMIT) -> str:
    """Shorten a raw frame for logging."""
    if raw is None:
        return ""
    text = repr(raw) if isinstance(raw, (bytes, bytearray)) else raw
    if len(text) > limit:
        return text[:limit] + "..."
    return text
