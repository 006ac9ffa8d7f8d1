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
Main application module for the chat relay.

Loads configuration, configures logging, starts the WebSocket server and
waits for a shutdown signal.
"""

import asyncio
import signal
import sys

from pydantic import ValidationError

from chatrelay.config import Config
from chatrelay.logging_config import configure_logging, get_loggers
from chatrelay.server.web_resource import WebServer

app_logger, _, _ = get_loggers()


async def main(config: Config) -> int:
    """Run the relay until SIGINT/SIGTERM. Returns the process exit status."""
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler():
        app_logger.info("Shutdown signal received, initiating graceful shutdown.")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    app_logger.info(
        f"Configuration: Port: {config.port}, Path: {config.ws_path}, "
        f"Max History: {config.max_history}, "
        f"History File: {config.history_file or 'Not set'}"
    )

    server = WebServer(config)
    try:
        await server.start()
    except OSError as e:
        app_logger.error(f"Cannot bind {config.host}:{config.port}: {e}")
        await server.cleanup()
        return 1

    try:
        await shutdown_event.wait()
        app_logger.info("Shutdown event received, server is stopping.")
    finally:
        await server.cleanup()
    return 0


def run():
    try:
        config = Config(_cli_parse_args=True)
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(config.log_level, config.log_format)
    sys.exit(asyncio.run(main(config)))
