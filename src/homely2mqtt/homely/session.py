"""Session manager for the Homely socket.io event channel.

One call to `SessionManager.run()` is one session: acquire a token, dial,
receive events until the channel ends or the caller asks to stop. The manager
never re-dials; `HomelyBridge` decides whether and when to call `run()` again.

Inbound envelopes are normalized on the socket.io callback and handed to a
dispatcher task through a bounded queue, so a slow consumer can never stall
the socket reader. Each consumer call is bounded by `handler_timeout`.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlencode

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from homely2mqtt import log_context
from homely2mqtt.const import (
    ALARM_STATE_CHANGED,
    DEVICE_STATE_CHANGED,
    HOMELY_EVENT_QUEUE_SIZE,
    HOMELY_HANDLER_TIMEOUT,
    HOMELY_SOCKET_URL,
    HOMELY_STRICT_EVENTS,
)
from homely2mqtt.homely.events import normalize_event
from homely2mqtt.homely.exceptions import (
    ChannelError,
    DialError,
    EventNormalizationError,
    HomelyAuthenticationError,
    SessionDisconnectedError,
)
from homely2mqtt.homely.models import AlarmStateChanged, DeviceStateChanged, DomainEvent
from homely2mqtt.instrumentation import log_timing, measure_time
from homely2mqtt.logging_abstraction import get_logger

if TYPE_CHECKING:
    from homely2mqtt.homely.cloud_api import HomelyCloudAPI

__all__ = [
    "AlarmChangeHandler",
    "DeviceChangeHandler",
    "SessionEndReason",
    "SessionManager",
    "SessionOutcome",
    "SessionState",
]

logger = get_logger(__name__)

DeviceChangeHandler = Callable[[DeviceStateChanged], Awaitable[None] | None]
AlarmChangeHandler = Callable[[AlarmStateChanged], Awaitable[None] | None]

# seconds to wait for the engine.io handshake
DIAL_TIMEOUT = 15
# the vendor serves Socket.IO 2 (Engine.IO protocol 3) under the default path
SOCKETIO_PATH = "socket.io"


class SessionState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    DIALING = "dialing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionEndReason(StrEnum):
    CANCELLED = "cancelled"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(slots=True)
class SessionOutcome:
    """How a session ended and what it saw on the way."""

    reason: SessionEndReason
    error: BaseException | None = None
    connected: bool = False
    events_received: int = 0
    events_delivered: int = 0
    events_rejected: int = 0
    events_dropped: int = 0

    @property
    def cancelled(self) -> bool:
        return self.reason is SessionEndReason.CANCELLED


class SessionManager:
    """Runs sessions against the Homely event channel for one location.

    Args:
        cloud_api: Token source
        location_id: Location whose events are streamed
        on_device_change: Called with every DeviceStateChanged (sync or async)
        on_alarm_change: Called with every AlarmStateChanged (sync or async)
        socket_url: Channel endpoint
        strict: End the session on the first malformed event instead of skipping it
        handler_timeout: Upper bound, in seconds, on one async handler call
        queue_size: Events buffered between the channel and the handlers

    """

    lp: str = "session:"

    def __init__(
        self,
        cloud_api: HomelyCloudAPI,
        location_id: str,
        on_device_change: DeviceChangeHandler,
        on_alarm_change: AlarmChangeHandler,
        *,
        socket_url: str = HOMELY_SOCKET_URL,
        strict: bool = HOMELY_STRICT_EVENTS,
        handler_timeout: float = HOMELY_HANDLER_TIMEOUT,
        queue_size: int = HOMELY_EVENT_QUEUE_SIZE,
    ) -> None:
        self.cloud_api = cloud_api
        self.location_id = location_id
        self.on_device_change = on_device_change
        self.on_alarm_change = on_alarm_change
        self.socket_url = socket_url.rstrip("/")
        self.strict = strict
        self.handler_timeout = handler_timeout
        self.queue_size = max(1, queue_size)

        self.state: SessionState = SessionState.DISCONNECTED
        self.last_outcome: SessionOutcome | None = None
        self.runs: int = 0
        self._sio: socketio.AsyncClient | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._finished: asyncio.Event = asyncio.Event()
        self._outcome: SessionOutcome = SessionOutcome(SessionEndReason.CLOSED)

    def _reset(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._finished = asyncio.Event()
        self._outcome = SessionOutcome(SessionEndReason.CLOSED)

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("%s state %s -> %s", self.lp, self.state, state)
        self.state = state

    def _finish(self, reason: SessionEndReason, error: BaseException | None = None) -> None:
        """Record the terminal signal. Only the first one counts."""
        if self._finished.is_set():
            logger.debug(
                "%s ignoring terminal signal %s (%s), session already ended with %s",
                self.lp,
                reason,
                error,
                self._outcome.reason,
            )
            return
        self._outcome.reason = reason
        self._outcome.error = error
        self._set_state(SessionState.DISCONNECTED)
        self._finished.set()

    def _dial_url(self, token: str) -> str:
        query = urlencode({"locationId": self.location_id, "token": f"Bearer {token}"}, quote_via=quote)
        return f"{self.socket_url}?{query}"

    def _build_client(self) -> socketio.AsyncClient:
        sio = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        sio.on("connect", handler=self._on_connect)
        sio.on("connect_error", handler=self._on_connect_error)
        sio.on("disconnect", handler=self._on_disconnect)
        sio.on("event", handler=self._on_event)
        return sio

    async def run(self, stop_event: asyncio.Event | None = None) -> SessionOutcome:
        """Run one session until the channel ends or `stop_event` is set.

        Returns the outcome instead of raising for channel, dial and token
        failures. A stop request yields a CANCELLED outcome. Cancelling the
        task running this coroutine cleans up and re-raises CancelledError;
        the CANCELLED outcome is still available as `last_outcome`.
        """
        if stop_event is None:
            stop_event = asyncio.Event()
        self.runs += 1
        with log_context.bound(session_id=log_context.new_session_id(self.runs)):
            logger.info("%s starting session for location %s", self.lp, self.location_id)
            self._reset()
            try:
                await self._run(stop_event)
            except asyncio.CancelledError:
                self._finish(SessionEndReason.CANCELLED)
                raise
            finally:
                await self._close()
                self.last_outcome = self._outcome
                self._log_outcome(self._outcome)
        return self._outcome

    async def _run(self, stop_event: asyncio.Event) -> None:
        lp = f"{self.lp}run:"
        self._set_state(SessionState.UNAUTHENTICATED)
        try:
            token = await self.cloud_api.get_access_token()
        except HomelyAuthenticationError as e:
            logger.error("%s unable to create tokens: %s", lp, e)
            self._finish(SessionEndReason.ERROR, e)
            return

        self._set_state(SessionState.DIALING)
        self._sio = self._build_client()
        self._dispatcher = asyncio.create_task(self._dispatch_events(), name=f"{self.lp}dispatcher")

        dial = asyncio.create_task(self._dial(token), name=f"{self.lp}dial")
        stop_wait = asyncio.create_task(stop_event.wait())
        try:
            done, _ = await asyncio.wait({dial, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not dial.done():
                dial.cancel()
            with suppress(asyncio.CancelledError):
                await dial
            with suppress(asyncio.CancelledError):
                await stop_wait

        if dial not in done:
            self._finish(SessionEndReason.CANCELLED)
            return

        await self._wait_for_end(stop_event)

    async def _dial(self, token: str) -> None:
        lp = f"{self.lp}dial:"
        assert self._sio is not None
        logger.debug("%s dialing %s", lp, self.socket_url)
        try:
            async with asyncio.timeout(DIAL_TIMEOUT):
                await self._sio.connect(
                    self._dial_url(token),
                    transports=["websocket"],
                    socketio_path=SOCKETIO_PATH,
                )
        except SocketIOConnectionError as e:
            logger.warning("%s unable to dial homely socket io api: %s", lp, e)
            self._finish(SessionEndReason.ERROR, DialError(f"unable to dial homely socket io api: {e}"))
        except TimeoutError:
            logger.warning("%s no handshake from homely socket io api after %ss", lp, DIAL_TIMEOUT)
            self._finish(SessionEndReason.ERROR, DialError(f"dial timed out after {DIAL_TIMEOUT}s"))

    async def _wait_for_end(self, stop_event: asyncio.Event) -> None:
        """Block until a terminal signal or a stop request, whichever comes first."""
        stop_wait = asyncio.create_task(stop_event.wait())
        finished_wait = asyncio.create_task(self._finished.wait())
        try:
            await asyncio.wait({stop_wait, finished_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (stop_wait, finished_wait):
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if not self._finished.is_set():
            self._finish(SessionEndReason.CANCELLED)

    async def _close(self) -> None:
        lp = f"{self.lp}close:"
        sio = self._sio
        self._sio = None
        if sio is not None and sio.connected:
            try:
                await sio.disconnect()
            except Exception as e:
                logger.warning("%s socket.io disconnect failed: %s", lp, e)

        dispatcher = self._dispatcher
        self._dispatcher = None
        if dispatcher is None:
            return
        if not self._outcome.cancelled and not dispatcher.done():
            # deliver what the channel already handed us before it closed
            try:
                async with asyncio.timeout(self.handler_timeout):
                    await self._queue.join()
            except TimeoutError:
                logger.warning("%s gave up draining %d queued event(s)", lp, self._queue.qsize())
        dispatcher.cancel()
        with suppress(asyncio.CancelledError):
            await dispatcher
        if not self._queue.empty():
            self._outcome.events_dropped += self._queue.qsize()
            logger.info("%s discarded %d undelivered event(s)", lp, self._queue.qsize())

    def _log_outcome(self, outcome: SessionOutcome) -> None:
        context: dict[str, object] = {
            "reason": outcome.reason,
            "connected": outcome.connected,
            "received": outcome.events_received,
            "delivered": outcome.events_delivered,
            "rejected": outcome.events_rejected,
            "dropped": outcome.events_dropped,
        }
        if outcome.reason is SessionEndReason.ERROR:
            logger.warning("%s session ended: %s", self.lp, outcome.error, extra=context)
        else:
            logger.info("%s session ended (%s)", self.lp, outcome.reason, extra=context)

    # socket.io callbacks

    async def _on_connect(self) -> None:
        logger.info("%s Connected", self.lp)
        self._outcome.connected = True
        if not self._finished.is_set():
            self._set_state(SessionState.CONNECTED)

    async def _on_connect_error(self, data: Any = None) -> None:
        logger.warning("%s error: %s", self.lp, data)
        self._finish(SessionEndReason.ERROR, ChannelError(data))

    async def _on_disconnect(self, reason: Any = None) -> None:
        logger.info("%s Disconnected", self.lp, extra={"reason": reason})
        self._finish(SessionEndReason.CLOSED, SessionDisconnectedError(reason))

    async def _on_event(self, data: Any = None) -> None:
        lp = f"{self.lp}event:"
        if self._finished.is_set():
            return
        self._outcome.events_received += 1
        try:
            event = normalize_event(data)
        except EventNormalizationError as e:
            self._outcome.events_rejected += 1
            if self.strict:
                logger.error("%s %s", lp, e)
                self._finish(SessionEndReason.ERROR, e)
            else:
                logger.warning("%s skipping event: %s", lp, e, extra={"event_type": e.event_type})
            return

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._outcome.events_dropped += 1
            logger.warning(
                "%s event queue full (%d), dropping %s",
                lp,
                self.queue_size,
                type(event).__name__,
            )

    # delivery

    async def _dispatch_events(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: DomainEvent) -> None:
        lp = f"{self.lp}deliver:"
        if isinstance(event, DeviceStateChanged):
            handler: Callable[[Any], Awaitable[None] | None] = self.on_device_change
            event_type = DEVICE_STATE_CHANGED
        else:
            handler = self.on_alarm_change
            event_type = ALARM_STATE_CHANGED
        name = f"{event_type} handler"

        with log_context.bound(event_type=event_type):
            logger.debug("%s calling %s: %s", lp, name, event)
            start = time.perf_counter()
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    async with asyncio.timeout(self.handler_timeout):
                        await result
            except TimeoutError:
                logger.error("%s %s exceeded %.1fs, skipping event", lp, name, self.handler_timeout)
                return
            except Exception:
                logger.exception("%s %s failed, skipping event", lp, name)
                return
            finally:
                log_timing(name, measure_time(start))
        self._outcome.events_delivered += 1
