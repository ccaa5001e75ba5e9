"""MQTT side of the bridge.

- client.py: MQTTClient with connect / publish / disconnect
- state_updates.py: alarm, device state and liveness publishing
- discovery.py: startup inventory publishing
"""

from .client import InvalidPayloadError, InvalidTopicError, MQTTClient, validate_topic
from .discovery import DiscoveryHelper
from .state_updates import StateUpdateHelper

__all__ = [
    "DiscoveryHelper",
    "InvalidPayloadError",
    "InvalidTopicError",
    "MQTTClient",
    "StateUpdateHelper",
    "validate_topic",
]
