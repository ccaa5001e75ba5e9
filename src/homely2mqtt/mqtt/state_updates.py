"""MQTT state update helper.

Publishes runtime changes coming from the Homely event channel: the alarm
state, device state changes (fanned out to three topic forms per change) and
the bridge's own liveness and status messages.
"""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING

from homely2mqtt.const import LIVENESS_TOPIC, STATUS_TOPIC
from homely2mqtt.homely.exceptions import DeviceNotFoundError
from homely2mqtt.logging_abstraction import get_logger

if TYPE_CHECKING:
    from homely2mqtt.homely.models import DeviceStateChanged
    from homely2mqtt.homely.registry import DeviceRegistry
    from homely2mqtt.mqtt.client import MQTTClient

logger = get_logger(__name__)


def device_state_topics(location_slug: str, device_slug: str, device_id: str, state_name: str) -> tuple[str, ...]:
    """The three topics one device state change is published under."""
    return (
        f"location/{location_slug}/{device_slug}/{state_name}",
        f"device/{device_slug}/{state_name}",
        f"{device_id}/{state_name}",
    )


class StateUpdateHelper:
    """Helper class for publishing alarm, device and liveness updates to MQTT."""

    def __init__(self, mqtt_client: MQTTClient, registry: DeviceRegistry) -> None:
        """Initialize the state update helper.

        Args:
            mqtt_client: Connected MQTTClient used for every publish
            registry: Resolves device ids to topic slugs

        """
        self.client: MQTTClient = mqtt_client
        self.registry: DeviceRegistry = registry
        # last value seen per (device id, state name), in first-seen order
        self.latest: dict[tuple[str, str], object] = {}

    def _publish(self, topic: str, value: object, retain: bool) -> bool:
        lp = f"{self.client.lp}state:"
        try:
            return self.client.publish(topic, value, retain=retain) is not None
        except ValueError as e:
            logger.warning("%s not publishing to %s: %s", lp, topic, e)
            return False

    def publish_home_value(self, name: str, value: object) -> bool:
        return self._publish(f"home/{name}", value, retain=True)

    def publish_alarm(self, state: str) -> bool:
        """Publish the alarm state to `home/alarm` (retained)."""
        logger.info("%s alarm state: %s", self.client.lp, state)
        return self.publish_home_value("alarm", state)

    def publish_device_state(self, device_id: str, state_name: str, value: object) -> int:
        """Publish one changed state value under the location, device and id topics.

        Returns the number of messages scheduled; 0 when the device is unknown.
        """
        lp = f"{self.client.lp}device_state:"
        try:
            descriptor = self.registry.resolve(device_id)
        except DeviceNotFoundError as e:
            logger.warning("%s unable to lookup device: %s", lp, e)
            return 0

        self.latest[(device_id, state_name)] = value
        published = 0
        for topic in device_state_topics(descriptor.location_slug, descriptor.slug, device_id, state_name):
            if self._publish(topic, value, retain=True):
                published += 1
        logger.debug(
            "%s %s/%s = %r (%d message(s))",
            lp,
            descriptor.slug,
            state_name,
            value,
            published,
        )
        return published

    def publish_device_change(self, event: DeviceStateChanged) -> int:
        """Fan a DeviceStateChanged out to one publish set per change, in order."""
        return sum(
            self.publish_device_state(event.device_id, change.state_name, change.value) for change in event.changes
        )

    def replay_device_states(self) -> int:
        """Publish the latest value of every device state changed since startup.

        Used after a broker reconnect, once the inventory has put the snapshot
        values back, so that newer values win.
        """
        return sum(
            self.publish_device_state(device_id, state_name, value)
            for (device_id, state_name), value in list(self.latest.items())
        )

    def publish_heartbeat(self, now: datetime.datetime | None = None) -> bool:
        """Publish the liveness timestamp (not retained)."""
        if now is None:
            now = datetime.datetime.now(datetime.UTC)
        return self._publish(LIVENESS_TOPIC, now.isoformat(), retain=False)

    def publish_status(self, message: str) -> bool:
        return self._publish(STATUS_TOPIC, message, retain=False)
