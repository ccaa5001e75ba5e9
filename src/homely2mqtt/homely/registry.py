"""Device registry: device id -> topic-friendly descriptor.

Built once from the home snapshot. The first lookup for an id scans the device
list (the API does not return it sorted or indexed); the resulting descriptor
is memoized and never recomputed.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import StrEnum

from homely2mqtt.homely.exceptions import DeviceNotFoundError
from homely2mqtt.homely.models import Device
from homely2mqtt.logging_abstraction import get_logger

__all__ = [
    "DeviceDescriptor",
    "DeviceRegistry",
    "SensorKind",
    "classify_sensor",
    "slugify",
    "split_location",
]

logger = get_logger(__name__)

LOCATION_SEPARATOR = " - "


class SensorKind(StrEnum):
    MOTION = "motion"
    SMOKE = "smoke"
    ENTRY = "entry"
    UNKNOWN = "unknown"


# checked in order, first match wins
_SENSOR_MARKERS: tuple[tuple[str, SensorKind], ...] = (
    ("Motion", SensorKind.MOTION),
    ("Smoke", SensorKind.SMOKE),
    ("Entry", SensorKind.ENTRY),
)


def slugify(text: str) -> str:
    """
    Convert a display string to a topic segment.
    E.g., 'Living Room' -> 'living_room'
    """
    return text.lower().replace(" ", "_")


def classify_sensor(model_name: str) -> SensorKind:
    """Classify a device by substring match on its model name (motion > smoke > entry)."""
    for marker, kind in _SENSOR_MARKERS:
        if marker in model_name:
            return kind
    return SensorKind.UNKNOWN


def split_location(location: str) -> tuple[str, str] | None:
    """Split 'Floor 0 - Entrance' into ('Floor 0', 'Entrance').

    Returns None unless the string holds exactly one separator.
    """
    parts = location.split(LOCATION_SEPARATOR)
    if len(parts) != 2:
        return None
    floor, room = parts
    return floor, room


@dataclass(frozen=True, slots=True)
class DeviceDescriptor:
    """Derived presentation metadata for one device."""

    device_id: str
    name: str
    slug: str
    sensor: SensorKind
    location: str
    location_slug: str
    floor: str | None = None
    room: str | None = None

    @classmethod
    def from_device(cls, device: Device) -> DeviceDescriptor:
        floor_room = split_location(device.location)
        floor, room = (slugify(floor_room[0]), slugify(floor_room[1])) if floor_room else (None, None)
        return cls(
            device_id=device.id,
            name=device.name,
            slug=slugify(device.name),
            sensor=classify_sensor(device.model_name),
            location=device.location,
            location_slug=slugify(device.location),
            floor=floor,
            room=room,
        )


class DeviceRegistry:
    """Lookup table from device id to DeviceDescriptor.

    Reads of cached ids are lock-free; the lock only guards the miss path so
    concurrent first lookups of the same id compute a single descriptor.
    """

    lp: str = "registry:"

    def __init__(self, devices: Iterable[Device]) -> None:
        self._devices: tuple[Device, ...] = tuple(devices)
        self._cache: dict[str, DeviceDescriptor] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[Device]:
        return iter(self._devices)

    @property
    def cached_ids(self) -> frozenset[str]:
        return frozenset(self._cache)

    def find_device(self, device_id: str) -> Device:
        """Linear scan of the snapshot for `device_id`.

        Raises:
            DeviceNotFoundError: if the id is not in the snapshot

        """
        for device in self._devices:
            if device.id == device_id:
                return device
        raise DeviceNotFoundError(device_id)

    def resolve(self, device_id: str) -> DeviceDescriptor:
        """Return the descriptor for `device_id`, computing it on first use.

        Raises:
            DeviceNotFoundError: if the id is not in the snapshot

        """
        descriptor = self._cache.get(device_id)
        if descriptor is not None:
            return descriptor

        with self._lock:
            descriptor = self._cache.get(device_id)
            if descriptor is None:
                descriptor = DeviceDescriptor.from_device(self.find_device(device_id))
                self._cache[device_id] = descriptor
                logger.debug(
                    "%s cached descriptor for %s -> %s (%s)",
                    self.lp,
                    device_id,
                    descriptor.slug,
                    descriptor.sensor,
                )
        return descriptor
