"""Homely cloud side of the bridge: REST snapshot, event channel and the
typed models, normalizers and device registry between them.
"""

from .cloud_api import HomelyCloudAPI
from .registry import DeviceDescriptor, DeviceRegistry, SensorKind
from .session import SessionEndReason, SessionManager, SessionOutcome, SessionState

__all__ = [
    "DeviceDescriptor",
    "DeviceRegistry",
    "HomelyCloudAPI",
    "SensorKind",
    "SessionEndReason",
    "SessionManager",
    "SessionOutcome",
    "SessionState",
]
