"""
Logging setup shared by the relay server and the terminal client.

Records carry structured context through `extra=`. The rich console
handler folds that context onto the message line; the JSON handler emits
it as top-level fields.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Tuple

from pythonjsonlogger.json import JsonFormatter
from rich.logging import RichHandler

APP_LOGGER = "chat_relay_app"
ACCESS_LOGGER = "ws_access"
HISTORY_LOGGER = "chat_history"

NOISY_DEPENDENCIES = ("aiohttp", "asyncio")

# Configured level -> (application level, dependency level)
LEVELS: Dict[str, Tuple[int, int]] = {
    "TRACE": (logging.DEBUG, logging.DEBUG),
    "DEBUG": (logging.DEBUG, logging.INFO),
    "INFO": (logging.INFO, logging.WARNING),
    "WARNING": (logging.WARNING, logging.WARNING),
    "ERROR": (logging.ERROR, logging.WARNING),
    "CRITICAL": (logging.CRITICAL, logging.WARNING),
}

JSON_FIELDS = "%(timestamp)s %(severity)s %(logger)s %(message)s"


def get_loggers():
    """Returns the app, access and history loggers."""
    return (
        logging.getLogger(APP_LOGGER),
        logging.getLogger(ACCESS_LOGGER),
        logging.getLogger(HISTORY_LOGGER),
    )


_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _extras(record: logging.LogRecord) -> Dict[str, object]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class SingleLineExtrasFilter(logging.Filter):
    """Appends `extra=` context to the message as `key=value` pairs."""

    def filter(self, record: logging.LogRecord) -> bool:
        extras = _extras(record)
        if not extras:
            return True

        pairs = " ".join(f"{key}={value}" for key, value in extras.items())
        # Render args now; the message is no longer a format string afterwards.
        record.msg = f"{record.getMessage()} | {pairs}"
        record.args = None
        for key in extras:
            delattr(record, key)
        return True


class CustomJsonFormatter(JsonFormatter):
    """JSON lines with `timestamp`, `severity` and `logger` on every record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            created = datetime.fromtimestamp(record.created, timezone.utc)
            log_record["timestamp"] = created.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        log_record["severity"] = log_record.pop("levelname", None) or record.levelname
        log_record["logger"] = log_record.get("logger") or record.name


def _build_handler(log_format: str) -> logging.Handler:
    if log_format == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(CustomJsonFormatter(JSON_FIELDS))
        return handler

    handler = RichHandler(
        rich_tracebacks=True,
        show_path=True,
        show_time=True,
        show_level=True,
        markup=False,
    )
    handler.addFilter(SingleLineExtrasFilter())
    return handler


def _reset_handlers(root: logging.Logger) -> None:
    for logger in list(logging.root.manager.loggerDict.values()):
        if isinstance(logger, logging.Logger):
            logger.handlers.clear()
            logger.propagate = True
    root.handlers.clear()


def configure_logging(log_level: str = "INFO", log_format: str = "rich"):
    """
    Install a single root handler and set levels for the app and its dependencies.

    TRACE opens every dependency logger to DEBUG; DEBUG keeps them at INFO;
    anything else keeps them at WARNING.
    """
    level_name = log_level.upper()
    app_level, deps_level = LEVELS.get(level_name, (logging.INFO, logging.WARNING))

    root = logging.getLogger()
    _reset_handlers(root)
    root.setLevel(min(app_level, deps_level))
    root.addHandler(_build_handler(log_format))

    loggers = get_loggers()
    for logger in loggers:
        logger.setLevel(app_level)
    for name in NOISY_DEPENDENCIES:
        logging.getLogger(name).setLevel(deps_level)

    loggers[0].info(
        f"Logging configured: {level_name} "
        f"(app={logging.getLevelName(app_level)}, "
        f"dependencies={logging.getLevelName(deps_level)}, format={log_format})"
    )
    return loggers
