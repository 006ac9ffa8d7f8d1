from __future__ import annotations

import weakref
from typing import Optional

from aiohttp import WSCloseCode, web

from chatrelay.config import Config
from chatrelay.logging_config import get_loggers
from chatrelay.server.gateway import ConnectionGateway
from chatrelay.server.middleware import error_handling_middleware, logging_middleware
from chatrelay.server.state import ChatRelay
from chatrelay.server.store import AbstractMessageStore, JsonlMessageStore

app_logger, _, _ = get_loggers()


async def handle_health_check(request: web.Request) -> web.Response:
    return web.Response(
        text="OK",
        status=200,
        content_type="text/plain",
        headers={"Cache-Control": "no-cache"},
    )


def create_store(config: Config) -> Optional[AbstractMessageStore]:
    """Build the durable store named by the configuration, if any."""
    if not config.history_file:
        return None
    app_logger.info(f"Using JSON-lines message log at {config.history_file}")
    return JsonlMessageStore(config.history_file)


async def on_startup(app: web.Application):
    relay: ChatRelay = app["relay"]
    count = await relay.load_history()
    app_logger.info(f"Relay ready with {count} message(s) of history")


async def on_shutdown(app: web.Application):
    """Close every open WebSocket, then flush outbound frames and persistence."""
    app_logger.info("Server shutting down...")
    for ws in set(app["websockets"]):
        await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    config: Config = app["config"]
    relay: ChatRelay = app["relay"]
    await relay.shutdown(timeout=config.shutdown_timeout)

    store = relay.history.store
    if store is not None:
        await store.close()
    app_logger.info("Server shutdown actions completed.")


def build_app(
    config: Config, store: Optional[AbstractMessageStore] = None
) -> web.Application:
    """Create the aiohttp application serving the relay."""
    app = web.Application(
        middlewares=[
            logging_middleware(),
            error_handling_middleware(),
        ]
    )
    if store is None:
        store = create_store(config)
    relay = ChatRelay(max_history=config.max_history, store=store)
    gateway = ConnectionGateway(relay, heartbeat=config.heartbeat)

    app["config"] = config
    app["relay"] = relay
    app["websockets"] = weakref.WeakSet()

    app.router.add_get("/_health_check", handle_health_check)
    app.router.add_get(config.ws_path, gateway.handle)
    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    return app


class WebServer:
    """A wrapper for the aiohttp web server."""

    def __init__(
        self,
        config: Config,
        store: Optional[AbstractMessageStore] = None,
    ):
        self.config = config
        self.port = config.port
        self.host = config.host
        self.app = build_app(config, store=store)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    @property
    def relay(self) -> ChatRelay:
        return self.app["relay"]

    async def start(self):
        """Start listening. Raises OSError when the port cannot be bound."""
        self.runner = web.AppRunner(self.app, access_log=None)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        app_logger.info(
            f"Chat relay listening on ws://{self.host}:{self.port}{self.config.ws_path}"
        )

    async def stop(self):
        if self.site:
            await self.site.stop()
            self.site = None

    async def cleanup(self):
        await self.stop()
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
