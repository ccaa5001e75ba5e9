"""Exception hierarchy for the Homely side of the bridge.

Configuration and location errors are fatal at startup. Session errors end one
session attempt and leave reconnection to the bridge. Payload and lookup errors
are recoverable: the offending event or publish is logged and skipped.
"""

from __future__ import annotations


class HomelyError(Exception):
    """Base class for all homely2mqtt errors."""


class HomelyConfigError(HomelyError):
    """Missing or invalid configuration (credentials, broker address)."""


class HomelyAuthenticationError(HomelyError):
    """Access token could not be obtained.

    Attributes:
        status: HTTP status returned by the token endpoint, if any

    """

    def __init__(self, reason: str, status: int | None = None) -> None:
        self.reason: str = reason
        self.status: int | None = status
        super().__init__(f"Authentication failed: {reason}" + (f" (HTTP {status})" if status else ""))

    @property
    def credentials_rejected(self) -> bool:
        """True when the vendor refused the username/password outright."""
        return self.status in (400, 401, 403)


class HomelyAPIError(HomelyError):
    """REST request failed or returned something we could not decode."""

    def __init__(self, reason: str, url: str = "", status: int | None = None) -> None:
        self.reason: str = reason
        self.url: str = url
        self.status: int | None = status
        super().__init__(f"API request to {url or '<unknown>'} failed: {reason}")


class LocationError(HomelyError):
    """The account does not expose exactly one location."""


class LocationCountError(LocationError):
    """No locations found for the account."""

    def __init__(self) -> None:
        super().__init__("no locations found")


class UnsupportedLocationsError(LocationError):
    """More than one location is not supported by a single bridge instance.

    Attributes:
        count: Number of locations returned by the API

    """

    def __init__(self, count: int) -> None:
        self.count: int = count
        super().__init__(f"more than 1 location unsupported, found {count}")


class PayloadError(HomelyError):
    """An inbound payload could not be interpreted."""


class EventNormalizationError(PayloadError):
    """An event envelope could not be turned into a domain event.

    Attributes:
        event_type: The envelope's `type` tag, when it had one
        envelope: The raw envelope, kept for logging

    """

    def __init__(self, reason: str, event_type: str | None = None, envelope: object = None) -> None:
        self.reason: str = reason
        self.event_type: str | None = event_type
        self.envelope: object = envelope
        prefix = f"unable to parse {event_type} event" if event_type else "unable to parse event"
        super().__init__(f"{prefix}: {reason}")


class UnknownEventTypeError(EventNormalizationError):
    """The envelope carried a `type` tag we have no normalizer for."""

    def __init__(self, event_type: object, envelope: object = None) -> None:
        super().__init__(f"unhandled event type: {event_type!r}", envelope=envelope)
        self.unknown_type: object = event_type


class DeviceNotFoundError(HomelyError, LookupError):
    """Device id is not part of the home snapshot."""

    def __init__(self, device_id: str) -> None:
        self.device_id: str = device_id
        super().__init__(f"cant find deviceID {device_id} in home snapshot")


class SessionError(HomelyError):
    """The event channel session ended abnormally."""


class DialError(SessionError):
    """Dialing the event channel failed."""


class ChannelError(SessionError):
    """The channel reported an error frame.

    Attributes:
        payload: Whatever the channel handed to the error handler

    """

    def __init__(self, payload: object) -> None:
        self.payload: object = payload
        super().__init__(f"socketio error: {payload}")


class SessionDisconnectedError(SessionError):
    """The channel was closed, by the server or by the network."""

    def __init__(self, reason: object = None) -> None:
        self.reason: object = reason
        super().__init__("disconnected" if reason is None else f"disconnected: {reason}")


class SessionFatalError(SessionError):
    """Reconnecting is pointless: credentials rejected or retry budget exhausted."""
