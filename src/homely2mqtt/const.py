import os

from homely2mqtt import __version__

__all__ = [
    "ALARM_STATE_CHANGED",
    "BRIDGE_START_TASK_NAME",
    "DEVICE_STATE_CHANGED",
    "HEARTBEAT_TASK_NAME",
    "HOMELY_API_BASE",
    "HOMELY_API_TIMEOUT",
    "HOMELY_DEBUG",
    "HOMELY_EVENT_QUEUE_SIZE",
    "HOMELY_HANDLER_TIMEOUT",
    "HOMELY_HEARTBEAT_INTERVAL",
    "HOMELY_LOG_FORMAT",
    "HOMELY_LOG_JSON_FILE",
    "HOMELY_MAX_RECONNECT_ATTEMPTS",
    "HOMELY_MQTT_CLIENT_ID",
    "HOMELY_MQTT_HOST",
    "HOMELY_MQTT_PASS",
    "HOMELY_MQTT_PORT",
    "HOMELY_MQTT_USER",
    "HOMELY_PASSWORD",
    "HOMELY_PERF_THRESHOLD_MS",
    "HOMELY_PERF_TRACKING",
    "HOMELY_RECONNECT_BASE_DELAY",
    "HOMELY_RECONNECT_MAX_DELAY",
    "HOMELY_SOCKET_URL",
    "HOMELY_STARTUP_DELAY",
    "HOMELY_STRICT_EVENTS",
    "HOMELY_TOPIC_ROOT",
    "HOMELY_USERNAME",
    "HOMELY_VERSION",
    "LIVENESS_TOPIC",
    "MQTT_WATCHDOG_TASK_NAME",
    "SESSION_TASK_NAME",
    "STATUS_TOPIC",
    "YES_ANSWER",
    "env_bool",
    "env_float",
    "env_int",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if not raw:
        return default
    return raw.casefold() in YES_ANSWER


HOMELY_VERSION: str = __version__

# Homely cloud
HOMELY_API_BASE: str = os.environ.get("HOMELY_API_BASE", "https://sdk.iotiliti.cloud/homely/")
HOMELY_SOCKET_URL: str = os.environ.get("HOMELY_SOCKET_URL", "https://sdk.iotiliti.cloud")
HOMELY_API_TIMEOUT: int = env_int("HOMELY_API_TIMEOUT", 10)
_username = os.environ.get("HOMELY_USERNAME")
HOMELY_USERNAME: str | None = _username if _username else None
_password = os.environ.get("HOMELY_PASSWORD")
HOMELY_PASSWORD: str | None = _password if _password else None

# MQTT broker
HOMELY_MQTT_HOST: str = os.environ.get("HOMELY_MQTT_HOST", "localhost")
HOMELY_MQTT_PORT: int = env_int("HOMELY_MQTT_PORT", 1883)
HOMELY_MQTT_USER: str | None = os.environ.get("HOMELY_MQTT_USER")
HOMELY_MQTT_PASS: str | None = os.environ.get("HOMELY_MQTT_PASS")
HOMELY_MQTT_CLIENT_ID: str = os.environ.get("HOMELY_MQTT_CLIENT_ID", "homely2mqtt_client")
HOMELY_TOPIC_ROOT: str = os.environ.get("HOMELY_TOPIC_ROOT", "home/homely")

# Bridge behaviour
HOMELY_HEARTBEAT_INTERVAL: float = env_float("HOMELY_HEARTBEAT_INTERVAL", 30.0)
# pause between the location and home lookups, the API rate limits back-to-back calls
HOMELY_STARTUP_DELAY: float = env_float("HOMELY_STARTUP_DELAY", 0.5)
HOMELY_RECONNECT_BASE_DELAY: float = env_float("HOMELY_RECONNECT_BASE_DELAY", 1.0)
HOMELY_RECONNECT_MAX_DELAY: float = env_float("HOMELY_RECONNECT_MAX_DELAY", 300.0)
# 0 = retry forever
HOMELY_MAX_RECONNECT_ATTEMPTS: int = env_int("HOMELY_MAX_RECONNECT_ATTEMPTS", 0)
HOMELY_STRICT_EVENTS: bool = env_bool("HOMELY_STRICT_EVENTS", False)
HOMELY_HANDLER_TIMEOUT: float = env_float("HOMELY_HANDLER_TIMEOUT", 10.0)
HOMELY_EVENT_QUEUE_SIZE: int = env_int("HOMELY_EVENT_QUEUE_SIZE", 256)

HOMELY_DEBUG: bool = env_bool("HOMELY_DEBUG", False)

# Logging Configuration
HOMELY_LOG_FORMAT: str = os.environ.get("HOMELY_LOG_FORMAT", "human")  # console format: "human" or "json"
# JSON lines are also appended here when set
HOMELY_LOG_JSON_FILE: str | None = os.environ.get("HOMELY_LOG_JSON_FILE") or None

# Performance Instrumentation
HOMELY_PERF_TRACKING: bool = env_bool("HOMELY_PERF_TRACKING", True)
HOMELY_PERF_THRESHOLD_MS: int = env_int("HOMELY_PERF_THRESHOLD_MS", 250)

# Event envelope types
DEVICE_STATE_CHANGED = "device-state-changed"
ALARM_STATE_CHANGED = "alarm-state-changed"

# Topics relative to the topic root
LIVENESS_TOPIC = "homely2mqtt/lastupdate"
STATUS_TOPIC = "homely2mqtt/status"

BRIDGE_START_TASK_NAME = "HomelyBridge_START"
SESSION_TASK_NAME = "HomelySession_RUN"
HEARTBEAT_TASK_NAME = "HomelyBridge_HEARTBEAT"
MQTT_WATCHDOG_TASK_NAME = "HomelyBridge_MQTT_WATCHDOG"
