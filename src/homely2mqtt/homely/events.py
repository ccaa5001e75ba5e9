"""Turn raw Homely event envelopes into typed domain events.

Envelopes look like `{"type": "...", "data": {...}}`. The shape of `data` is
not contractually fixed, so both normalizers read it through `map_get` and
never let a malformed payload escape as anything but EventNormalizationError.
"""

from __future__ import annotations

import datetime
from collections.abc import Mapping

from homely2mqtt.const import ALARM_STATE_CHANGED, DEVICE_STATE_CHANGED
from homely2mqtt.homely.exceptions import EventNormalizationError, UnknownEventTypeError
from homely2mqtt.homely.extract import map_get
from homely2mqtt.homely.models import AlarmStateChanged, DeviceStateChanged, DomainEvent, StateChange
from homely2mqtt.logging_abstraction import get_logger

__all__ = [
    "normalize_event",
    "parse_alarm_state_changed",
    "parse_device_state_changed",
    "parse_timestamp",
]

logger = get_logger(__name__)


def parse_device_state_changed(envelope: object) -> DeviceStateChanged:
    """Build a DeviceStateChanged from a `device-state-changed` envelope.

    A single malformed entry in `changes` fails the whole event; partial
    results are never returned.

    Raises:
        EventNormalizationError: if the envelope, `data.deviceId`, `data.changes`
            or any change entry is missing or mistyped

    """
    if not isinstance(envelope, Mapping):
        raise EventNormalizationError(
            f"unexpected event type: {type(envelope).__name__}, {envelope!r}",
            DEVICE_STATE_CHANGED,
            envelope,
        )

    device_id = map_get(envelope, "data", "deviceId", kind=str)
    if not device_id:
        raise EventNormalizationError(
            f"unable to find device id: {device_id.reason}",
            DEVICE_STATE_CHANGED,
            envelope,
        )

    changes = map_get(envelope, "data", "changes", kind=list)
    if not changes:
        raise EventNormalizationError(
            f"unable to find changes: {changes.reason}",
            DEVICE_STATE_CHANGED,
            envelope,
        )

    parsed: list[StateChange] = []
    for idx, change in enumerate(changes.unwrap()):
        if not isinstance(change, Mapping):
            raise EventNormalizationError(
                f"unable to interpret change #{idx} as map, found {change!r} of type {type(change).__name__}",
                DEVICE_STATE_CHANGED,
                envelope,
            )
        state_name = map_get(change, "stateName", kind=str)
        if not state_name:
            raise EventNormalizationError(
                f"unable to find stateName in change #{idx}: {state_name.reason}",
                DEVICE_STATE_CHANGED,
                envelope,
            )
        value = map_get(change, "value")
        if not value:
            raise EventNormalizationError(
                f"unable to find value in change #{idx}: {value.reason}",
                DEVICE_STATE_CHANGED,
                envelope,
            )
        parsed.append(StateChange(state_name=state_name.unwrap(), value=value.get()))

    return DeviceStateChanged(device_id=device_id.unwrap(), changes=tuple(parsed))


def parse_timestamp(raw: object) -> datetime.datetime | None:
    """Parse an ISO-8601 timestamp into an aware datetime (UTC when no offset is given).

    Returns None for anything that is not a parseable string.
    """
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("events: ignoring unparseable timestamp %r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed


def parse_alarm_state_changed(envelope: object) -> AlarmStateChanged:
    """Build an AlarmStateChanged from an `alarm-state-changed` envelope.

    Alarm envelopes differ per sub-event (an arm-pending event carries no
    device id, for example), so absent or mistyped fields become empty values.
    Only an envelope, or a present `data`, that is not a mapping is rejected.

    Raises:
        EventNormalizationError: if the envelope or its `data` is not a mapping

    """
    if not isinstance(envelope, Mapping):
        raise EventNormalizationError(
            f"unable to parse {envelope!r} as alarm event",
            ALARM_STATE_CHANGED,
            envelope,
        )
    data = envelope.get("data")
    if data is not None and not isinstance(data, Mapping):
        raise EventNormalizationError(
            f"alarm event data is {type(data).__name__}, expected a mapping",
            ALARM_STATE_CHANGED,
            envelope,
        )

    return AlarmStateChanged(
        device_id=map_get(envelope, "data", "deviceId", kind=str).get(""),
        user_name=map_get(envelope, "data", "userName", kind=str).get(""),
        state=map_get(envelope, "data", "state", kind=str).get(""),
        timestamp=parse_timestamp(map_get(envelope, "data", "timestamp", kind=str).get()),
    )


_NORMALIZERS = {
    DEVICE_STATE_CHANGED: parse_device_state_changed,
    ALARM_STATE_CHANGED: parse_alarm_state_changed,
}


def normalize_event(envelope: object) -> DomainEvent:
    """Dispatch an envelope to the normalizer selected by its `type` tag.

    Raises:
        UnknownEventTypeError: for a type we do not handle (or no type at all)
        EventNormalizationError: if the selected normalizer rejects the payload

    """
    if not isinstance(envelope, Mapping):
        raise EventNormalizationError(
            f"unexpected event type: {type(envelope).__name__}, {envelope!r}",
            envelope=envelope,
        )
    event_type = envelope.get("type")
    normalizer = _NORMALIZERS.get(event_type) if isinstance(event_type, str) else None
    if normalizer is None:
        raise UnknownEventTypeError(event_type, envelope)
    return normalizer(envelope)
