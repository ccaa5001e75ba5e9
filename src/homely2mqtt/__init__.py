"""Bridge Homely alarm system events to an MQTT broker."""

__version__ = "0.3.0"
