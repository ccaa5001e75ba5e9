"""Data models for the Homely REST snapshot and the normalized event stream.

REST payloads use camelCase keys (and `gatewayserial` in lower case), so the
snapshot models alias every field. Unknown keys are ignored: the vendor adds
fields over time and none of them are needed here.
"""

from __future__ import annotations

import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

__all__ = [
    "AlarmStateChanged",
    "Device",
    "DeviceStateChanged",
    "DomainEvent",
    "FeatureBlock",
    "Features",
    "Home",
    "Location",
    "StateChange",
    "StateValue",
]


def _gateway_serial_field() -> Any:
    return Field(default="", validation_alias=AliasChoices("gatewayserial", "gatewaySerial", "gateway_serial"))


class _HomelyModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Location(_HomelyModel):
    """A monitored site as returned by `GET /locations`."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    role: str = ""
    user_id: str = ""
    location_id: str
    gateway_serial: str = _gateway_serial_field()


class StateValue(_HomelyModel):
    """One named state inside a feature block, with the time it last changed."""

    model_config = ConfigDict(frozen=True)

    value: Any = None
    last_updated: datetime.datetime | None = None


class FeatureBlock(_HomelyModel):
    """A feature (alarm, battery, ...) holding its named states."""

    model_config = ConfigDict(frozen=True)

    states: dict[str, StateValue] = Field(default_factory=dict)


class Features(_HomelyModel):
    model_config = ConfigDict(frozen=True)

    setup: FeatureBlock | None = None
    alarm: FeatureBlock | None = None
    temperature: FeatureBlock | None = None
    battery: FeatureBlock | None = None
    diagnostic: FeatureBlock | None = None

    def blocks(self) -> dict[str, FeatureBlock]:
        """Return the present feature blocks keyed by feature name."""
        present: dict[str, FeatureBlock] = {}
        for name in ("setup", "alarm", "temperature", "battery", "diagnostic"):
            block = getattr(self, name)
            if block is not None:
                present[name] = block
        return present


class Device(_HomelyModel):
    """A sensor attached to the gateway.

    Devices are not updated from state-changed events; the bridge forwards
    those events and leaves the snapshot as it was fetched.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    serial_number: str = ""
    location: str = ""
    online: bool = False
    model_id: str = ""
    model_name: str = ""
    features: Features = Field(default_factory=Features)


class Home(_HomelyModel):
    """Full home snapshot from `GET /home/{locationId}`.

    `alarm_state` is the only field changed after construction, and only by
    the alarm-state-changed handler.
    """

    location_id: str
    name: str = ""
    gateway_serial: str = _gateway_serial_field()
    user_role_at_location: str = ""
    alarm_state: str = ""
    devices: list[Device] = Field(default_factory=list)


class StateChange(BaseModel):
    """A single `(stateName, value)` pair from a device-state-changed event."""

    model_config = ConfigDict(frozen=True)

    state_name: str
    value: Any = None


class DeviceStateChanged(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    changes: tuple[StateChange, ...] = ()


class AlarmStateChanged(BaseModel):
    """Alarm transition. Every field is optional upstream and defaults to empty."""

    model_config = ConfigDict(frozen=True)

    device_id: str = ""
    user_name: str = ""
    state: str = ""
    timestamp: datetime.datetime | None = None


DomainEvent = DeviceStateChanged | AlarmStateChanged
