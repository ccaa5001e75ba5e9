"""Logging setup for homely2mqtt.

All package loggers hang off the `homely2mqtt` logger, which owns the only
handlers: a console handler (human or JSON lines, per HOMELY_LOG_FORMAT) and,
when HOMELY_LOG_JSON_FILE is set, a JSON-lines file handler. Each record is
stamped with the current run/session/event identifiers from `log_context`.

Call sites pass structured context with `extra={...}`; it is rendered as
`| k=v` on the console and as the `context` object in JSON.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping, MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, override

from homely2mqtt import log_context
from homely2mqtt.const import HOMELY_DEBUG, HOMELY_LOG_FORMAT, HOMELY_LOG_JSON_FILE

__all__ = [
    "HomelyLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "get_logger",
    "quiet_third_party_loggers",
    "set_package_level",
]

PACKAGE_LOGGER = "homely2mqtt"

# libraries that log every frame at INFO
NOISY_LOGGERS = ("socketio", "socketio.client", "engineio", "engineio.client", "aiomqtt", "aiohttp.access")


def _context_of(record: logging.LogRecord) -> Mapping[str, object]:
    extra_data = getattr(record, "extra_data", None)
    return extra_data if isinstance(extra_data, Mapping) else {}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; identifiers are top-level keys."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "line": f"{record.module}:{record.lineno}",
            "message": record.getMessage(),
            **log_context.current().fields(),
        }
        if context := _context_of(record):
            line["context"] = dict(context)
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class HumanReadableFormatter(logging.Formatter):
    """`<time> <LEVEL> [module:line] [<session or run> <event>] > message | k=v`"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] [%(log_tag)s] > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        record.log_tag = log_context.current().tag
        formatted = super().format(record)
        if context := _context_of(record):
            formatted += " | " + " | ".join(f"{k}={v}" for k, v in context.items())
        return formatted


class HomelyLogger(logging.LoggerAdapter):
    """Adapter that carries `extra=` through to the formatters as `extra_data`."""

    @override
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = kwargs.pop("extra", None)
        if extra:
            kwargs["extra"] = {"extra_data": dict(extra)}
        return msg, kwargs


def _install_handlers(package: logging.Logger, log_format: str, json_file: str | None) -> None:
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if log_format == "json" else HumanReadableFormatter())
    package.addHandler(console)

    if json_file:
        try:
            path = Path(json_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, mode="a")
        except OSError as e:
            package.warning("unable to open JSON log file %s: %s", json_file, e)
        else:
            file_handler.setFormatter(JSONFormatter())
            package.addHandler(file_handler)


def get_logger(name: str) -> HomelyLogger:
    """Return the adapter for `name`, setting up the package handlers on first use."""
    package = logging.getLogger(PACKAGE_LOGGER)
    if not package.handlers:
        package.setLevel(logging.DEBUG if HOMELY_DEBUG else logging.INFO)
        _install_handlers(package, HOMELY_LOG_FORMAT, HOMELY_LOG_JSON_FILE)
    return HomelyLogger(logging.getLogger(name))


def quiet_third_party_loggers(level: int = logging.WARNING) -> None:
    """Raise the level of chatty library loggers (socket.io, engine.io, aiomqtt)."""
    for name in NOISY_LOGGERS:
        third_party = logging.getLogger(name)
        third_party.setLevel(level)
        third_party.propagate = False


def set_package_level(level: int) -> None:
    """Package loggers inherit their level, so setting it on the root one is enough."""
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
