"""
Shared fixtures for unit tests.

This module provides reusable fixtures for testing homely2mqtt components.
"""

import asyncio
from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from homely2mqtt.homely.models import Home
from homely2mqtt.homely.registry import DeviceRegistry
from homely2mqtt.mqtt.client import MQTTClient
from homely2mqtt.structs import GlobalObjEnv, GlobalObject


@pytest.fixture(autouse=True)
def reset_global_object():
    """Give every test fresh runtime settings and no running bridge"""
    g = GlobalObject()
    GlobalObject.env = GlobalObjEnv()
    g.bridge = None
    GlobalObject.tasks.clear()
    yield
    GlobalObject.env = GlobalObjEnv()
    g.bridge = None
    GlobalObject.tasks.clear()


@pytest.fixture
def sample_home_payload():
    """
    Sample `GET /home/{locationId}` response body.

    Three devices: a motion sensor with a floor/room location, a smoke alarm
    and an entry sensor whose location has no floor/room split.
    """
    return {
        "locationId": "loc-1",
        "gatewayserial": "0200000A",
        "name": "Cabin",
        "alarmState": "DISARMED",
        "userRoleAtLocation": "OWNER",
        "devices": [
            {
                "id": "abc",
                "name": "Living Room",
                "serialNumber": "0015BC001A000001",
                "location": "Floor 1 - Living Room",
                "online": True,
                "modelId": "e806ca73-4be0-4bd2-98cb-71f273b09812",
                "modelName": "Motion Sensor Mini",
                "features": {
                    "alarm": {
                        "states": {
                            "alarm": {"value": False, "lastUpdated": "2024-03-01T10:00:00.000Z"},
                            "tamper": {"value": False, "lastUpdated": None},
                        },
                    },
                    "temperature": {
                        "states": {
                            "temperature": {"value": 21.5, "lastUpdated": "2024-03-01T10:05:00.000Z"},
                        },
                    },
                },
            },
            {
                "id": "def",
                "name": "Hall Smoke",
                "serialNumber": "0015BC001A000002",
                "location": "Floor 0 - Hall",
                "online": True,
                "modelId": "smoke-1",
                "modelName": "Intelligent Smoke Alarm",
                "features": {
                    "battery": {"states": {"low": {"value": False, "lastUpdated": None}}},
                },
            },
            {
                "id": "ghi",
                "name": "Front Door",
                "serialNumber": "0015BC001A000003",
                "location": "Entrance",
                "online": False,
                "modelId": "entry-1",
                "modelName": "Alarm Entry Sensor 2",
                "features": {},
            },
        ],
    }


@pytest.fixture
def sample_home(sample_home_payload):
    """Home snapshot parsed from sample_home_payload"""
    return Home.model_validate(sample_home_payload)


@pytest.fixture
def registry(sample_home):
    """DeviceRegistry built from the sample home"""
    return DeviceRegistry(sample_home.devices)


@pytest.fixture
def mock_mqtt_client():
    """
    Mock MQTTClient for testing.

    `publish` is synchronous and returns a (mock) delivery task, like the
    real client does when connected.
    """
    client = MagicMock(spec=MQTTClient)
    client.lp = "mqtt:"
    client.publish = MagicMock(return_value=MagicMock())
    client.connection_lost = asyncio.Event()
    return client


@pytest.fixture
def device_envelope() -> Callable[..., dict]:
    """Factory for device-state-changed envelopes"""

    def _make(device_id: str = "abc", changes: list | None = None) -> dict:
        if changes is None:
            changes = [{"feature": "temperature", "stateName": "temperature", "value": 21.5}]
        return {
            "type": "device-state-changed",
            "data": {"deviceId": device_id, "gatewayId": "gw-1", "locationId": "loc-1", "changes": changes},
        }

    return _make


@pytest.fixture
def alarm_envelope() -> Callable[..., dict]:
    """Factory for alarm-state-changed envelopes"""

    def _make(state: str = "ARMED_AWAY", **data: object) -> dict:
        payload: dict[str, object] = {"locationId": "loc-1", "state": state}
        payload.update(data)
        return {"type": "alarm-state-changed", "data": payload}

    return _make


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


@pytest.fixture
def wait_until():
    """Coroutine function yielding to the loop until `predicate()` holds (fails after `timeout`)"""
    return _wait_until
