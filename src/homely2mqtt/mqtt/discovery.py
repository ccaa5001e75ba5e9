"""Startup inventory publishing.

Publishes, once per process, the home-level values and every device's static
description (`device/<slug>/{id,sensor,location,floor,room}`) followed by the
feature state values from the snapshot, so subscribers have a value for each
state before the first change event arrives.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from homely2mqtt.logging_abstraction import get_logger

if TYPE_CHECKING:
    from homely2mqtt.homely.models import Device, Home
    from homely2mqtt.homely.registry import DeviceDescriptor, DeviceRegistry
    from homely2mqtt.mqtt.client import MQTTClient

logger = get_logger(__name__)


class DiscoveryHelper:
    """Helper class for publishing the startup inventory."""

    def __init__(self, mqtt_client: MQTTClient, registry: DeviceRegistry) -> None:
        self.client: MQTTClient = mqtt_client
        self.registry: DeviceRegistry = registry

    def _publish(self, topic: str, value: object) -> bool:
        try:
            return self.client.publish(topic, value, retain=True) is not None
        except ValueError as e:
            logger.warning("%s not publishing to %s: %s", f"{self.client.lp}discovery:", topic, e)
            return False

    def publish_home(self, home: Home) -> int:
        """Publish `home/name`, `home/location_id` and `home/alarm`."""
        values = {
            "name": home.name,
            "location_id": home.location_id,
            "alarm": home.alarm_state,
        }
        return sum(self._publish(f"home/{name}", value) for name, value in values.items())

    def publish_static(self, descriptor: DeviceDescriptor) -> int:
        values: dict[str, object] = {
            "id": descriptor.device_id,
            "sensor": str(descriptor.sensor),
            "location": descriptor.location,
        }
        if descriptor.floor is not None:
            values["floor"] = descriptor.floor
        if descriptor.room is not None:
            values["room"] = descriptor.room
        return sum(self._publish(f"device/{descriptor.slug}/{name}", value) for name, value in values.items())

    def publish_snapshot_states(self, descriptor: DeviceDescriptor, device: Device) -> int:
        count = 0
        for block in device.features.blocks().values():
            for state_name, state in block.states.items():
                count += self._publish(f"device/{descriptor.slug}/{state_name}", state.value)
        return count

    def publish_inventory(self) -> int:
        """Publish the static description and snapshot states of every device.

        Returns the number of messages scheduled.
        """
        lp = f"{self.client.lp}discovery:"
        total = 0
        for device in self.registry:
            descriptor = self.registry.resolve(device.id)
            total += self.publish_static(descriptor)
            total += self.publish_snapshot_states(descriptor, device)
            logger.debug(
                "%s published device '%s' (%s, %s)",
                lp,
                device.name,
                descriptor.slug,
                descriptor.sensor,
            )
        logger.info("%s inventory published for %d device(s), %d message(s)", lp, len(self.registry), total)
        return total
