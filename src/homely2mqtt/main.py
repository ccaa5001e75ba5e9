"""Command line entry point: parse flags and .env, then run the bridge under uvloop.

Exit status is 0 after a requested stop and 1 for configuration or fatal
bridge errors.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from functools import partial
from pathlib import Path

import dotenv
import uvloop

from homely2mqtt import log_context
from homely2mqtt.bridge import HomelyBridge
from homely2mqtt.const import BRIDGE_START_TASK_NAME, HOMELY_VERSION
from homely2mqtt.homely.exceptions import HomelyConfigError, HomelyError
from homely2mqtt.logging_abstraction import get_logger, quiet_third_party_loggers, set_package_level
from homely2mqtt.mqtt.client import split_broker
from homely2mqtt.structs import GlobalObject
from homely2mqtt.utils import check_python_version, signal_handler

logger = get_logger(__name__)

# socket.io / engine.io / aiomqtt log every frame at INFO
quiet_third_party_loggers()

g = GlobalObject()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bridge Homely alarm events to MQTT")
    _ = parser.add_argument("--broker", help="MQTT broker as host[:port]", default=None)
    _ = parser.add_argument("--client-id", "--clientID", dest="client_id", help="MQTT client id", default=None)
    _ = parser.add_argument("--topic-root", help="Prefix for every published topic", default=None)
    _ = parser.add_argument("--homely-user", help="Homely username", default=None)
    _ = parser.add_argument("--homely-password", help="Homely password", default=None)
    _ = parser.add_argument(
        "--strict-events",
        action="store_true",
        help="End the session on the first malformed event instead of skipping it",
    )
    _ = parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    return parser


def load_env_file(env_file: Path) -> None:
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return
    if dotenv.load_dotenv(env_path, override=True):
        logger.info("Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})


def apply_cli_overrides(args: argparse.Namespace) -> None:
    """Copy CLI flags over the environment-derived settings in `g.env`.

    Raises:
        HomelyConfigError: for a malformed --broker value

    """
    env = g.env
    if args.broker:
        env.mqtt_host, env.mqtt_port = split_broker(args.broker, env.mqtt_port)
    if args.client_id:
        env.mqtt_client_id = args.client_id
    if args.topic_root is not None:
        env.topic_root = args.topic_root
    if args.homely_user:
        env.homely_username = args.homely_user
    if args.homely_password:
        env.homely_password = args.homely_password
    if args.strict_events:
        env.strict_events = True
    if args.debug:
        env.debug = True


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    g.cli_args = args = build_parser().parse_args(argv)
    if args.env:
        load_env_file(args.env)
    g.reload_env()
    apply_cli_overrides(args)

    if g.env.debug:
        set_package_level(logging.DEBUG)
        logger.info("Debug mode enabled")
    return args


async def run_bridge() -> None:
    loop = asyncio.get_running_loop()
    g.loop = loop
    loop.add_signal_handler(signal.SIGINT, partial(signal_handler, signal.SIGINT))
    loop.add_signal_handler(signal.SIGTERM, partial(signal_handler, signal.SIGTERM))
    logger.debug("Signal handlers configured for SIGINT & SIGTERM")

    g.bridge = bridge = HomelyBridge(g.env)
    task = asyncio.create_task(bridge.start(), name=BRIDGE_START_TASK_NAME)
    g.tasks.append(task)
    try:
        await task
    finally:
        g.bridge = None
        if task in g.tasks:
            g.tasks.remove(task)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for homely2mqtt. Returns the process exit status."""
    with log_context.bound(run_id=log_context.new_run_id()):
        logger.info("Starting homely2mqtt", extra={"version": HOMELY_VERSION})
        check_python_version()
        try:
            parse_cli(argv)
            uvloop.run(run_bridge())
        except HomelyConfigError as e:
            logger.critical("Configuration error: %s", e)
            return 1
        except HomelyError as e:
            logger.exception("Fatal error, shutting down", extra={"error": str(e)})
            return 1
        except asyncio.CancelledError:
            logger.info("homely2mqtt cancelled, shutting down...")
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        else:
            logger.info("homely2mqtt stopped gracefully")
        finally:
            logger.info("homely2mqtt shutdown complete")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
