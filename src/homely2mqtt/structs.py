"""Process-wide state for homely2mqtt: runtime settings and the running bridge."""

from __future__ import annotations

import asyncio
import os
from argparse import Namespace
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel

from homely2mqtt.const import (
    HOMELY_API_BASE,
    HOMELY_API_TIMEOUT,
    HOMELY_DEBUG,
    HOMELY_EVENT_QUEUE_SIZE,
    HOMELY_HANDLER_TIMEOUT,
    HOMELY_HEARTBEAT_INTERVAL,
    HOMELY_MAX_RECONNECT_ATTEMPTS,
    HOMELY_MQTT_CLIENT_ID,
    HOMELY_MQTT_HOST,
    HOMELY_MQTT_PASS,
    HOMELY_MQTT_PORT,
    HOMELY_MQTT_USER,
    HOMELY_PASSWORD,
    HOMELY_RECONNECT_BASE_DELAY,
    HOMELY_RECONNECT_MAX_DELAY,
    HOMELY_SOCKET_URL,
    HOMELY_STARTUP_DELAY,
    HOMELY_STRICT_EVENTS,
    HOMELY_TOPIC_ROOT,
    HOMELY_USERNAME,
    env_bool,
    env_float,
    env_int,
)

if TYPE_CHECKING:
    from homely2mqtt.bridge import HomelyBridge


class GlobalObjEnv(BaseModel):
    """Runtime settings.

    Seeded from the module constants in `const`, refreshed by
    `GlobalObject.reload_env()` after a .env file is loaded, then overridden by
    CLI flags.
    """

    homely_username: str | None = HOMELY_USERNAME
    homely_password: str | None = HOMELY_PASSWORD
    api_base: str = HOMELY_API_BASE
    socket_url: str = HOMELY_SOCKET_URL
    api_timeout: int = HOMELY_API_TIMEOUT
    mqtt_host: str = HOMELY_MQTT_HOST
    mqtt_port: int = HOMELY_MQTT_PORT
    mqtt_user: str | None = HOMELY_MQTT_USER
    mqtt_pass: str | None = HOMELY_MQTT_PASS
    mqtt_client_id: str = HOMELY_MQTT_CLIENT_ID
    topic_root: str = HOMELY_TOPIC_ROOT
    heartbeat_interval: float = HOMELY_HEARTBEAT_INTERVAL
    startup_delay: float = HOMELY_STARTUP_DELAY
    reconnect_base_delay: float = HOMELY_RECONNECT_BASE_DELAY
    reconnect_max_delay: float = HOMELY_RECONNECT_MAX_DELAY
    max_reconnect_attempts: int = HOMELY_MAX_RECONNECT_ATTEMPTS
    strict_events: bool = HOMELY_STRICT_EVENTS
    handler_timeout: float = HOMELY_HANDLER_TIMEOUT
    event_queue_size: int = HOMELY_EVENT_QUEUE_SIZE
    debug: bool = HOMELY_DEBUG


class GlobalObject:
    """Singleton container for cross-module state."""

    bridge: HomelyBridge | None = None
    loop: asyncio.AbstractEventLoop | None = None
    tasks: ClassVar[list[asyncio.Task[Any]]] = []
    env: GlobalObjEnv = GlobalObjEnv()
    cli_args: Namespace | None = None

    _instance: GlobalObject | None = None

    def __new__(cls, *_args: Any, **_kwargs: Any) -> GlobalObject:
        """Ensure only one GlobalObject instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def reload_env(self) -> None:
        """Re-read HOMELY_* environment variables into `env`."""
        self.env.homely_username = os.environ.get("HOMELY_USERNAME") or None
        self.env.homely_password = os.environ.get("HOMELY_PASSWORD") or None
        self.env.api_base = os.environ.get("HOMELY_API_BASE", "https://sdk.iotiliti.cloud/homely/")
        self.env.socket_url = os.environ.get("HOMELY_SOCKET_URL", "https://sdk.iotiliti.cloud")
        self.env.api_timeout = env_int("HOMELY_API_TIMEOUT", 10)
        self.env.mqtt_host = os.environ.get("HOMELY_MQTT_HOST", "localhost")
        self.env.mqtt_port = env_int("HOMELY_MQTT_PORT", 1883)
        self.env.mqtt_user = os.environ.get("HOMELY_MQTT_USER")
        self.env.mqtt_pass = os.environ.get("HOMELY_MQTT_PASS")
        self.env.mqtt_client_id = os.environ.get("HOMELY_MQTT_CLIENT_ID", "homely2mqtt_client")
        self.env.topic_root = os.environ.get("HOMELY_TOPIC_ROOT", "home/homely")
        self.env.heartbeat_interval = env_float("HOMELY_HEARTBEAT_INTERVAL", 30.0)
        self.env.startup_delay = env_float("HOMELY_STARTUP_DELAY", 0.5)
        self.env.reconnect_base_delay = env_float("HOMELY_RECONNECT_BASE_DELAY", 1.0)
        self.env.reconnect_max_delay = env_float("HOMELY_RECONNECT_MAX_DELAY", 300.0)
        self.env.max_reconnect_attempts = env_int("HOMELY_MAX_RECONNECT_ATTEMPTS", 0)
        self.env.strict_events = env_bool("HOMELY_STRICT_EVENTS", False)
        self.env.handler_timeout = env_float("HOMELY_HANDLER_TIMEOUT", 10.0)
        self.env.event_queue_size = env_int("HOMELY_EVENT_QUEUE_SIZE", 256)
        self.env.debug = env_bool("HOMELY_DEBUG", False)
