"""Process-level helpers: signal handling, the interpreter check and UTC time."""

from __future__ import annotations

import datetime
import signal
import sys

from homely2mqtt.logging_abstraction import get_logger
from homely2mqtt.structs import GlobalObject

logger = get_logger(__name__)
g = GlobalObject()


def signal_handler(signum: int) -> None:
    """Ask the running bridge to stop. Installed for SIGINT and SIGTERM."""
    logger.info("homely2mqtt: Intercepted signal: %s (%s)", signal.Signals(signum).name, signum)
    if g.bridge is not None:
        g.bridge.request_stop()
    else:
        for task in g.tasks:
            if not task.done():
                logger.debug("homely2mqtt: Cancelling task: %s", task.get_name())
                task.cancel()


def check_python_version() -> None:
    if sys.version_info < (3, 12):
        logger.critical("homely2mqtt requires Python 3.12 or newer, found %s", sys.version.split()[0])
        sys.exit(1)


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)
