"""MQTT client core for homely2mqtt.

Thin wrapper over aiomqtt: connect, publish and disconnect. Every topic is
relative to the configured topic root and every payload is JSON encoded.
Publishing is fire-and-forget: `publish()` validates and encodes the message,
schedules delivery on the event loop and returns without waiting for the
broker; delivery failures are logged and never retried. A broker error during
delivery marks the connection lost and sets `connection_lost`, which the
bridge watches to reconnect.
"""

from __future__ import annotations

import asyncio
import datetime
import json

import aiomqtt

from homely2mqtt.const import (
    HOMELY_MQTT_CLIENT_ID,
    HOMELY_MQTT_HOST,
    HOMELY_MQTT_PASS,
    HOMELY_MQTT_PORT,
    HOMELY_MQTT_USER,
    HOMELY_TOPIC_ROOT,
    STATUS_TOPIC,
)
from homely2mqtt.homely.exceptions import HomelyConfigError
from homely2mqtt.logging_abstraction import get_logger

__all__ = [
    "InvalidPayloadError",
    "InvalidTopicError",
    "MQTTClient",
    "encode_payload",
    "validate_topic",
]

logger = get_logger(__name__)

# how long disconnect() waits for in-flight publishes (seconds)
DISCONNECT_GRACE = 0.25


class InvalidTopicError(ValueError):
    """Topic is empty, absolute, or has an empty segment."""


class InvalidPayloadError(ValueError):
    """Payload cannot be JSON encoded."""


def validate_topic(topic: str) -> None:
    """Reject topics the bridge must never publish to.

    Raises:
        InvalidTopicError: for an empty topic, a topic starting with '/',
            or one with an empty segment ('device//battery')

    """
    if not topic:
        msg = "topic is empty"
        raise InvalidTopicError(msg)
    if topic.startswith("/"):
        msg = f"expected relative topic (cannot begin with slash): {topic!r}"
        raise InvalidTopicError(msg)
    if any(not segment for segment in topic.split("/")):
        msg = f"topic has an empty segment: {topic!r}"
        raise InvalidTopicError(msg)


def _json_default(value: object) -> object:
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    msg = f"Object of type {type(value).__name__} is not JSON serializable"
    raise TypeError(msg)


def encode_payload(payload: object) -> bytes:
    """JSON encode `payload` (datetimes as ISO-8601 strings).

    Raises:
        InvalidPayloadError: if the value is not JSON serializable

    """
    try:
        return json.dumps(payload, default=_json_default).encode()
    except (TypeError, ValueError) as e:
        msg = f"unable to encode payload {payload!r}: {e}"
        raise InvalidPayloadError(msg) from e


def split_broker(broker: str, default_port: int = HOMELY_MQTT_PORT) -> tuple[str, int]:
    """Split 'host[:port]' into (host, port).

    Raises:
        HomelyConfigError: for an empty host or a non-numeric port

    """
    host, sep, port = broker.rpartition(":")
    if not sep:
        host, port = broker, ""
    if not host:
        msg = f"invalid broker address: {broker!r}"
        raise HomelyConfigError(msg)
    if not port:
        return host, default_port
    try:
        return host, int(port)
    except ValueError as e:
        msg = f"invalid broker port in {broker!r}"
        raise HomelyConfigError(msg) from e


class MQTTClient:
    """Publishes bridge messages to an MQTT broker."""

    lp: str = "mqtt:"

    def __init__(
        self,
        host: str = HOMELY_MQTT_HOST,
        port: int = HOMELY_MQTT_PORT,
        username: str | None = HOMELY_MQTT_USER,
        password: str | None = HOMELY_MQTT_PASS,
        client_id: str = HOMELY_MQTT_CLIENT_ID,
        topic_root: str = HOMELY_TOPIC_ROOT,
    ) -> None:
        self.broker_host: str = host
        self.broker_port: int = port
        self.broker_username: str | None = username
        self.broker_password: str | None = password
        self.broker_client_id: str = client_id
        self.topic_root: str = topic_root.strip("/")
        self.client: aiomqtt.Client | None = None
        self._connected: bool = False
        self._pending: set[asyncio.Task[None]] = set()
        # set when an established connection drops, cleared by connect()
        self.connection_lost: asyncio.Event = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        """Check if MQTT client is connected to the broker."""
        return self._connected

    @property
    def pending(self) -> int:
        """Number of publishes handed to the broker client but not yet confirmed."""
        return len(self._pending)

    def scoped_topic(self, topic: str) -> str:
        return f"{self.topic_root}/{topic}" if self.topic_root else topic

    async def connect(self) -> None:
        """Connect to the broker.

        Raises:
            HomelyConfigError: broker unreachable or credentials refused

        """
        lp = f"{self.lp}connect:"
        logger.debug("%s Connecting to MQTT broker %s:%s...", lp, self.broker_host, self.broker_port)
        lwt = aiomqtt.Will(
            topic=self.scoped_topic(STATUS_TOPIC),
            payload=encode_payload("offline"),
            retain=False,
        )
        self.client = aiomqtt.Client(
            hostname=self.broker_host,
            port=self.broker_port,
            username=self.broker_username,
            password=self.broker_password,
            identifier=self.broker_client_id,
            will=lwt,
        )
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as mqtt_err_exc:
            # -> [Errno 111] Connection refused
            # [code:134] Bad user name or password
            self._connected = False
            self.client = None
            if "code:134" in str(mqtt_err_exc) or "code:135" in str(mqtt_err_exc):
                msg = f"MQTT broker refused credentials (username: {self.broker_username})"
            else:
                msg = f"cant connect to mqtt broker {self.broker_host}:{self.broker_port}: {mqtt_err_exc}"
            raise HomelyConfigError(msg) from mqtt_err_exc
        self._connected = True
        self.connection_lost.clear()
        logger.info(
            "%s Connected to MQTT broker: %s port: %s",
            lp,
            self.broker_host,
            self.broker_port,
        )

    async def disconnect(self) -> None:
        lp = f"{self.lp}disconnect:"
        if self._pending:
            _, still_pending = await asyncio.wait(set(self._pending), timeout=DISCONNECT_GRACE)
            if still_pending:
                logger.debug("%s %d publish(es) still in flight at disconnect", lp, len(still_pending))
        if self.client is None:
            return
        try:
            logger.debug("%s Disconnecting from broker...", lp)
            await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as ce:
            logger.warning("%s MQTT disconnect failed: %s", lp, ce)
        else:
            logger.info("%s Disconnected from MQTT broker", lp)
        finally:
            self._connected = False
            self.client = None

    async def reconnect(self) -> None:
        """Drop what is left of a lost connection and connect again.

        Raises:
            HomelyConfigError: broker still unreachable

        """
        lp = f"{self.lp}reconnect:"
        stale, self.client = self.client, None
        self._connected = False
        if stale is not None:
            try:
                await stale.__aexit__(None, None, None)
            except aiomqtt.MqttError as e:
                logger.debug("%s closing the lost connection: %s", lp, e)
        await self.connect()

    def _mark_lost(self, reason: Exception) -> None:
        if self._connected:
            logger.warning("%s lost connection to broker: %s", self.lp, reason)
        self._connected = False
        self.connection_lost.set()

    def publish(self, topic: str, payload: object, retain: bool = False) -> asyncio.Task[None] | None:
        """Schedule `payload` (JSON encoded) for delivery to `<topic_root>/<topic>`.

        Returns the delivery task, or None when not connected.

        Raises:
            InvalidTopicError: see `validate_topic`
            InvalidPayloadError: if `payload` is not JSON serializable

        """
        lp = f"{self.lp}publish:"
        validate_topic(topic)
        data = encode_payload(payload)
        scoped = self.scoped_topic(topic)
        if not self._connected or self.client is None:
            logger.warning("%s client not connected, dropping message for %s", lp, scoped)
            return None

        task = asyncio.create_task(self._deliver(self.client, scoped, data, retain), name=f"{lp}{scoped}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, client: aiomqtt.Client, topic: str, data: bytes, retain: bool) -> None:
        lp = f"{self.lp}deliver:"
        try:
            await client.publish(topic, data, qos=0, retain=retain)
        except aiomqtt.MqttCodeError as mqtt_code_exc:
            logger.warning("%s error publishing %s to %s: [MqttCodeError] %s", lp, data, topic, mqtt_code_exc)
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s error publishing %s to %s: [MqttError] %s", lp, data, topic, mqtt_err)
            # ignore late failures from a connection that was already replaced
            if client is self.client:
                self._mark_lost(mqtt_err)
