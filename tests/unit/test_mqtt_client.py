"""
Unit tests for MQTT client core functionality.

Tests MQTTClient connection lifecycle, topic validation, payload encoding
and fire-and-forget publishing.
"""

import asyncio
import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from homely2mqtt.homely.exceptions import HomelyConfigError
from homely2mqtt.mqtt.client import (
    InvalidPayloadError,
    InvalidTopicError,
    MQTTClient,
    encode_payload,
    split_broker,
    validate_topic,
)


@pytest.fixture
def aiomqtt_client():
    """Patch aiomqtt.Client; yields the (mock) class"""
    with patch("homely2mqtt.mqtt.client.aiomqtt.Client") as mock_cls:
        instance = MagicMock()
        instance.__aenter__ = AsyncMock(return_value=instance)
        instance.__aexit__ = AsyncMock(return_value=None)
        instance.publish = AsyncMock()
        mock_cls.return_value = instance
        yield mock_cls


@pytest.fixture
def client():
    return MQTTClient(
        host="broker.local",
        port=1883,
        username="user",
        password="pass",
        client_id="homely2mqtt",
        topic_root="home/homely",
    )


class TestValidateTopic:
    """Tests for validate_topic"""

    @pytest.mark.parametrize("topic", ["home/alarm", "abc/temperature", "lastupdate"])
    def test_valid(self, topic):
        """Test relative topics with non-empty segments pass"""
        validate_topic(topic)

    @pytest.mark.parametrize("topic", ["", "/home/alarm", "device//battery", "home/"])
    def test_invalid(self, topic):
        """Test empty, absolute and hollow topics are rejected"""
        with pytest.raises(InvalidTopicError):
            validate_topic(topic)

    def test_invalid_topic_is_value_error(self):
        """Test InvalidTopicError can be caught as ValueError"""
        with pytest.raises(ValueError, match="cannot begin with slash"):
            validate_topic("/x")


class TestEncodePayload:
    """Tests for encode_payload"""

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            (21.5, b"21.5"),
            (True, b"true"),
            (None, b"null"),
            ("ARMED_AWAY", b'"ARMED_AWAY"'),
            ({"a": [1, 2]}, b'{"a": [1, 2]}'),
        ],
    )
    def test_json(self, payload, expected):
        """Test payloads are JSON encoded"""
        assert encode_payload(payload) == expected

    def test_datetime(self):
        """Test datetimes are encoded as ISO-8601 strings"""
        ts = datetime.datetime(2024, 3, 1, 10, 0, tzinfo=datetime.UTC)

        assert encode_payload(ts) == b'"2024-03-01T10:00:00+00:00"'

    def test_unencodable(self):
        """Test non-serializable values raise InvalidPayloadError"""
        with pytest.raises(InvalidPayloadError):
            encode_payload(object())


class TestSplitBroker:
    """Tests for split_broker"""

    def test_host_and_port(self):
        assert split_broker("10.0.0.2:1884") == ("10.0.0.2", 1884)

    def test_default_port(self):
        assert split_broker("broker.local", default_port=1883) == ("broker.local", 1883)

    @pytest.mark.parametrize("broker", ["", ":1883", "broker:abc"])
    def test_invalid(self, broker):
        """Test unusable addresses are configuration errors"""
        with pytest.raises(HomelyConfigError):
            split_broker(broker)


class TestConnection:
    """Tests for connect / disconnect"""

    @pytest.mark.asyncio
    async def test_connect(self, client, aiomqtt_client):
        """Test connect builds the aiomqtt client with a last-will on the status topic"""
        await client.connect()

        assert client.is_connected
        kwargs = aiomqtt_client.call_args.kwargs
        assert kwargs["hostname"] == "broker.local"
        assert kwargs["port"] == 1883
        assert kwargs["username"] == "user"
        assert kwargs["identifier"] == "homely2mqtt"
        assert kwargs["will"].topic == "home/homely/homely2mqtt/status"
        assert kwargs["will"].payload == b'"offline"'
        aiomqtt_client.return_value.__aenter__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_refused(self, client, aiomqtt_client):
        """Test an unreachable broker is fatal configuration"""
        aiomqtt_client.return_value.__aenter__.side_effect = aiomqtt.MqttError("[Errno 111] Connection refused")

        with pytest.raises(HomelyConfigError, match="cant connect to mqtt broker broker.local:1883"):
            await client.connect()

        assert not client.is_connected
        assert client.client is None

    @pytest.mark.asyncio
    async def test_connect_bad_credentials(self, client, aiomqtt_client):
        """Test refused credentials get their own message"""
        aiomqtt_client.return_value.__aenter__.side_effect = aiomqtt.MqttError(
            "[code:134] Bad user name or password"
        )

        with pytest.raises(HomelyConfigError, match="refused credentials"):
            await client.connect()

    @pytest.mark.asyncio
    async def test_disconnect(self, client, aiomqtt_client):
        """Test disconnect exits the aiomqtt context"""
        await client.connect()
        await client.disconnect()

        aiomqtt_client.return_value.__aexit__.assert_awaited_once_with(None, None, None)
        assert not client.is_connected
        assert client.client is None

    @pytest.mark.asyncio
    async def test_disconnect_never_connected(self, client):
        """Test disconnect without a connection is a no-op"""
        await client.disconnect()

        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_disconnect_error_is_logged(self, client, aiomqtt_client):
        """Test a failing disconnect still resets the client"""
        aiomqtt_client.return_value.__aexit__.side_effect = aiomqtt.MqttError("gone")
        await client.connect()

        await client.disconnect()

        assert client.client is None


class TestPublish:
    """Tests for publish"""

    @pytest.mark.asyncio
    async def test_publish_scopes_topic(self, client, aiomqtt_client):
        """Test topics are placed under the root and payloads JSON encoded"""
        await client.connect()

        task = client.publish("home/alarm", "ARMED_AWAY", retain=True)
        await task

        aiomqtt_client.return_value.publish.assert_awaited_once_with(
            "home/homely/home/alarm", b'"ARMED_AWAY"', qos=0, retain=True
        )
        assert client.pending == 0

    @pytest.mark.asyncio
    async def test_publish_returns_before_delivery(self, client, aiomqtt_client):
        """Test publish does not wait for the broker"""
        gate = asyncio.Event()

        async def slow_publish(*args, **kwargs):
            await gate.wait()

        aiomqtt_client.return_value.publish.side_effect = slow_publish
        await client.connect()

        task = client.publish("a/b", 1)
        assert task is not None
        await asyncio.sleep(0)
        assert client.pending == 1
        assert not task.done()

        gate.set()
        await task
        assert client.pending == 0

    @pytest.mark.asyncio
    async def test_publish_not_connected(self, client, aiomqtt_client):
        """Test publishing without a connection drops the message"""
        assert client.publish("home/alarm", "DISARMED") is None
        aiomqtt_client.return_value.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_invalid_topic(self, client, aiomqtt_client):
        """Test invalid topics raise before anything is scheduled"""
        await client.connect()

        with pytest.raises(InvalidTopicError):
            client.publish("/home/alarm", "x")
        assert client.pending == 0

    @pytest.mark.asyncio
    async def test_publish_invalid_payload(self, client, aiomqtt_client):
        """Test unencodable payloads raise before anything is scheduled"""
        await client.connect()

        with pytest.raises(InvalidPayloadError):
            client.publish("home/alarm", {1, 2})

    @pytest.mark.asyncio
    async def test_delivery_error_marks_disconnected(self, client, aiomqtt_client):
        """Test a broker error during delivery is logged and flips the connection flag"""
        aiomqtt_client.return_value.publish.side_effect = aiomqtt.MqttError("Disconnected during message iteration")
        await client.connect()

        await client.publish("home/alarm", "x")

        assert not client.is_connected
        assert client.connection_lost.is_set()

    @pytest.mark.asyncio
    async def test_delivery_code_error_keeps_connection(self, client, aiomqtt_client):
        """Test a rejected publish is logged without dropping the connection"""
        aiomqtt_client.return_value.publish.side_effect = aiomqtt.MqttCodeError(4, "Could not publish message")
        await client.connect()

        await client.publish("home/alarm", "x")

        assert client.is_connected
        assert not client.connection_lost.is_set()

    def test_empty_root(self):
        """Test an empty topic root publishes topics unchanged"""
        assert MQTTClient(topic_root="/").scoped_topic("home/alarm") == "home/alarm"


class TestReconnect:
    """Tests for reconnect after a lost connection"""

    @pytest.fixture
    def connections(self):
        """Patch aiomqtt.Client so every connect gets its own mock"""
        created = []

        def make_client(**kwargs):
            instance = MagicMock()
            instance.__aenter__ = AsyncMock(return_value=instance)
            instance.__aexit__ = AsyncMock(return_value=None)
            instance.publish = AsyncMock()
            created.append(instance)
            return instance

        with patch("homely2mqtt.mqtt.client.aiomqtt.Client", side_effect=make_client):
            yield created

    @pytest.mark.asyncio
    async def test_reconnect_replaces_lost_connection(self, client, connections):
        """Test reconnect closes the lost connection, opens a new one and clears the lost flag"""
        await client.connect()
        connections[0].publish.side_effect = aiomqtt.MqttError("Disconnected")
        await client.publish("device/x/temperature", 21.5)
        assert client.publish("device/x/temperature", 21.5) is None

        await client.reconnect()

        assert client.is_connected
        assert not client.connection_lost.is_set()
        connections[0].__aexit__.assert_awaited_once_with(None, None, None)
        await client.publish("device/x/temperature", 21.5)
        connections[1].publish.assert_awaited_once_with(
            "home/homely/device/x/temperature", b"21.5", qos=0, retain=False
        )

    @pytest.mark.asyncio
    async def test_reconnect_ignores_close_error(self, client, connections):
        """Test an error while closing the dead connection does not stop the reconnect"""
        await client.connect()
        connections[0].__aexit__.side_effect = aiomqtt.MqttError("Disconnected during message iteration")

        await client.reconnect()

        assert client.is_connected
        assert client.client is connections[1]

    @pytest.mark.asyncio
    async def test_reconnect_failure(self, client, connections):
        """Test a broker that is still down raises and leaves the client disconnected"""
        await client.connect()
        connections[0].publish.side_effect = aiomqtt.MqttError("Disconnected")
        await client.publish("home/alarm", "x")

        with patch.object(client, "connect", side_effect=HomelyConfigError("cant connect to mqtt broker")):
            with pytest.raises(HomelyConfigError):
                await client.reconnect()

        assert not client.is_connected
        assert client.client is None
        assert client.connection_lost.is_set()

    @pytest.mark.asyncio
    async def test_late_failure_on_replaced_connection(self, client, connections):
        """Test a publish that fails on the old connection after a reconnect leaves the new one alone"""
        gate = asyncio.Event()

        async def fail_later(*args, **kwargs):
            await gate.wait()
            raise aiomqtt.MqttError("Disconnected")

        await client.connect()
        connections[0].publish.side_effect = fail_later
        in_flight = client.publish("home/alarm", "x")
        await asyncio.sleep(0)

        await client.reconnect()
        gate.set()
        await in_flight

        assert client.is_connected
        assert not client.connection_lost.is_set()
