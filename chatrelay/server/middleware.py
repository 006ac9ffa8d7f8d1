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
Middleware module for aiohttp application.

This module provides middlewares for:
- Access logging (request line, status and duration; for WebSocket
  requests the duration is the lifetime of the connection)
- Error handling (JSON error responses for unhandled exceptions)
"""

import time
from typing import Awaitable, Callable

from aiohttp import web

from ..logging_config import get_loggers
from .errors import error_response

# Get loggers for consistent logging throughout the application
app_logger, access_logger, _ = get_loggers()


def logging_middleware():
    """Middleware factory for access logging with request timing."""

    @web.middleware
    async def middleware(
        request: web.Request,
        handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
    ) -> web.StreamResponse:
        start_time = time.perf_counter()
        client_address_str = f"{request.remote}"
        request["client_address_str"] = client_address_str
        access_logger.debug(
            f"[{client_address_str}] Incoming: {request.method} {request.path_qs}"
        )

        try:
            response = await handler(request)
        except web.HTTPException as e:
            _log_access(request, client_address_str, e.status, start_time)
            raise

        _log_access(request, client_address_str, response.status, start_time)
        return response

    return middleware


def _log_access(
    request: web.Request, client_address_str: str, status: int, start_time: float
) -> None:
    duration = time.perf_counter() - start_time
    access_logger.info(
        f"[{client_address_str}] {request.method} {request.path} "
        f"{status} {duration:.3f}s",
        extra={
            "remote_address": client_address_str,
            "http_method": request.method,
            "http_path": request.path,
            "status": status,
            "total_duration_seconds": round(duration, 3),
        },
    )


def error_handling_middleware():
    """Middleware factory turning unhandled exceptions into JSON 500 responses."""

    @web.middleware
    async def middleware(
        request: web.Request,
        handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
    ) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            client_address_str = request.get("client_address_str", "unknown")
            app_logger.exception(
                f"[{client_address_str}] Unhandled exception in request handler: {e}"
            )
            return error_response(500, "Internal Server Error")

    return middleware
