"""
Unit tests for MQTT state update publishing.
"""

import datetime
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from homely2mqtt.homely.models import DeviceStateChanged, StateChange
from homely2mqtt.mqtt.client import InvalidTopicError, MQTTClient
from homely2mqtt.mqtt.state_updates import StateUpdateHelper, device_state_topics


@pytest.fixture
def helper(mock_mqtt_client, registry):
    return StateUpdateHelper(mock_mqtt_client, registry)


class TestDeviceStateTopics:
    """Tests for device_state_topics"""

    def test_three_forms(self):
        """Test the location, device and id topic forms"""
        assert device_state_topics("floor_0_-_hall", "hall_smoke", "def", "low") == (
            "location/floor_0_-_hall/hall_smoke/low",
            "device/hall_smoke/low",
            "def/low",
        )


class TestPublishDeviceState:
    """Tests for publish_device_state / publish_device_change"""

    def test_fans_out_to_three_topics(self, helper, mock_mqtt_client):
        """Test one change is published under three topics, retained"""
        count = helper.publish_device_state("abc", "temperature", 21.5)

        assert count == 3
        assert mock_mqtt_client.publish.call_args_list == [
            call("location/floor_1_-_living_room/living_room/temperature", 21.5, retain=True),
            call("device/living_room/temperature", 21.5, retain=True),
            call("abc/temperature", 21.5, retain=True),
        ]

    def test_unknown_device(self, helper, mock_mqtt_client):
        """Test an unknown device publishes nothing"""
        assert helper.publish_device_state("nope", "alarm", True) == 0
        mock_mqtt_client.publish.assert_not_called()

    def test_not_connected_counts_zero(self, helper, mock_mqtt_client):
        """Test dropped publishes are not counted"""
        mock_mqtt_client.publish.return_value = None

        assert helper.publish_device_state("abc", "alarm", True) == 0
        assert mock_mqtt_client.publish.call_count == 3

    def test_invalid_state_name_is_skipped(self, helper, mock_mqtt_client):
        """Test a topic rejected by the client is logged and skipped"""
        mock_mqtt_client.publish.side_effect = InvalidTopicError("empty segment")

        assert helper.publish_device_state("abc", "", 1) == 0

    def test_device_change_in_order(self, helper, mock_mqtt_client):
        """Test every change of an event is published, in event order"""
        event = DeviceStateChanged(
            device_id="def",
            changes=(StateChange(state_name="low", value=True), StateChange(state_name="alarm", value=False)),
        )

        assert helper.publish_device_change(event) == 6
        topics = [c.args[0] for c in mock_mqtt_client.publish.call_args_list]
        assert topics == [
            "location/floor_0_-_hall/hall_smoke/low",
            "device/hall_smoke/low",
            "def/low",
            "location/floor_0_-_hall/hall_smoke/alarm",
            "device/hall_smoke/alarm",
            "def/alarm",
        ]

    def test_device_change_without_changes(self, helper, mock_mqtt_client):
        """Test an event with no changes publishes nothing"""
        assert helper.publish_device_change(DeviceStateChanged(device_id="abc")) == 0
        mock_mqtt_client.publish.assert_not_called()


class TestReplay:
    """Tests for replay_device_states"""

    def test_replays_latest_values(self, helper, mock_mqtt_client):
        """Test only the newest value per device state is republished, including ones dropped while offline"""
        helper.publish_device_state("abc", "temperature", 20.0)
        mock_mqtt_client.publish.return_value = None
        helper.publish_device_state("abc", "temperature", 22.0)
        helper.publish_device_state("def", "low", True)
        helper.publish_device_state("nope", "alarm", True)
        mock_mqtt_client.publish.return_value = MagicMock()
        mock_mqtt_client.publish.reset_mock()

        assert helper.replay_device_states() == 6
        assert [c.args[:2] for c in mock_mqtt_client.publish.call_args_list] == [
            ("location/floor_1_-_living_room/living_room/temperature", 22.0),
            ("device/living_room/temperature", 22.0),
            ("abc/temperature", 22.0),
            ("location/floor_0_-_hall/hall_smoke/low", True),
            ("device/hall_smoke/low", True),
            ("def/low", True),
        ]

    def test_nothing_to_replay(self, helper, mock_mqtt_client):
        assert helper.replay_device_states() == 0
        mock_mqtt_client.publish.assert_not_called()


class TestHomeAndLiveness:
    """Tests for alarm, heartbeat and status publishing"""

    def test_alarm(self, helper, mock_mqtt_client):
        """Test the alarm state goes to home/alarm, retained"""
        assert helper.publish_alarm("ARMED_AWAY") is True
        mock_mqtt_client.publish.assert_called_once_with("home/alarm", "ARMED_AWAY", retain=True)

    def test_heartbeat(self, helper, mock_mqtt_client):
        """Test the heartbeat publishes an ISO timestamp, not retained"""
        now = datetime.datetime(2024, 3, 1, 10, 0, tzinfo=datetime.UTC)

        helper.publish_heartbeat(now)

        mock_mqtt_client.publish.assert_called_once_with(
            "homely2mqtt/lastupdate", "2024-03-01T10:00:00+00:00", retain=False
        )

    def test_heartbeat_defaults_to_now(self, helper, mock_mqtt_client):
        """Test the heartbeat timestamp defaults to the current UTC time"""
        helper.publish_heartbeat()

        sent = datetime.datetime.fromisoformat(mock_mqtt_client.publish.call_args.args[1])
        assert abs(datetime.datetime.now(datetime.UTC) - sent) < datetime.timedelta(seconds=5)

    def test_status(self, helper, mock_mqtt_client):
        """Test status messages are not retained"""
        helper.publish_status("connecting to streaming api")

        mock_mqtt_client.publish.assert_called_once_with(
            "homely2mqtt/status", "connecting to streaming api", retain=False
        )


class TestEndToEnd:
    """Device change through a real MQTTClient down to the broker call"""

    @pytest.mark.asyncio
    async def test_temperature_change_reaches_broker(self, registry):
        """Test abc/temperature=21.5 produces three retained broker publishes with payload 21.5"""
        with patch("homely2mqtt.mqtt.client.aiomqtt.Client") as mock_cls:
            broker = MagicMock()
            broker.__aenter__ = AsyncMock(return_value=broker)
            broker.__aexit__ = AsyncMock(return_value=None)
            broker.publish = AsyncMock()
            mock_cls.return_value = broker

            client = MQTTClient(host="broker.local", port=1883, topic_root="home/homely")
            await client.connect()
            helper = StateUpdateHelper(client, registry)

            event = DeviceStateChanged(device_id="abc", changes=(StateChange(state_name="temperature", value=21.5),))
            assert helper.publish_device_change(event) == 3
            await client.disconnect()

        assert broker.publish.await_args_list == [
            call("home/homely/location/floor_1_-_living_room/living_room/temperature", b"21.5", qos=0, retain=True),
            call("home/homely/device/living_room/temperature", b"21.5", qos=0, retain=True),
            call("home/homely/abc/temperature", b"21.5", qos=0, retain=True),
        ]
