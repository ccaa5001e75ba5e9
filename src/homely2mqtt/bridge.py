"""HomelyBridge: wires the Homely cloud to the MQTT broker.

Startup is strictly sequential (broker, location, home snapshot, registry,
inventory). After that three tasks run side by side until a stop is requested
or the session loop gives up: the session loop, which re-runs the
SessionManager with exponential backoff, the liveness heartbeat, and the
broker watchdog, which reconnects to MQTT after a lost connection and puts
the retained values back.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress

from homely2mqtt.const import HEARTBEAT_TASK_NAME, MQTT_WATCHDOG_TASK_NAME, SESSION_TASK_NAME
from homely2mqtt.homely.cloud_api import HomelyCloudAPI
from homely2mqtt.homely.exceptions import HomelyAuthenticationError, HomelyConfigError, SessionFatalError
from homely2mqtt.homely.models import AlarmStateChanged, DeviceStateChanged, Home, Location
from homely2mqtt.homely.registry import DeviceRegistry
from homely2mqtt.homely.session import SessionManager, SessionOutcome
from homely2mqtt.logging_abstraction import get_logger
from homely2mqtt.mqtt.client import MQTTClient
from homely2mqtt.mqtt.discovery import DiscoveryHelper
from homely2mqtt.mqtt.state_updates import StateUpdateHelper
from homely2mqtt.retry_policy import RetryPolicy
from homely2mqtt.structs import GlobalObjEnv, GlobalObject
from homely2mqtt.utils import utc_now

logger = get_logger(__name__)
g = GlobalObject()

CONNECTING_STATUS = "connecting to streaming api"


class HomelyBridge:
    """Orchestrates one Homely location -> one MQTT topic tree."""

    lp: str = "bridge:"

    def __init__(
        self,
        env: GlobalObjEnv,
        cloud_api: HomelyCloudAPI | None = None,
        mqtt_client: MQTTClient | None = None,
    ) -> None:
        self.env = env
        self.cloud_api = cloud_api or HomelyCloudAPI(
            env.homely_username,
            env.homely_password,
            api_base=env.api_base,
            api_timeout=env.api_timeout,
        )
        self.mqtt_client = mqtt_client or MQTTClient(
            host=env.mqtt_host,
            port=env.mqtt_port,
            username=env.mqtt_user,
            password=env.mqtt_pass,
            client_id=env.mqtt_client_id,
            topic_root=env.topic_root,
        )
        self.retry_policy = RetryPolicy(
            base_delay_seconds=env.reconnect_base_delay,
            max_delay_seconds=env.reconnect_max_delay,
            max_attempts=env.max_reconnect_attempts,
        )
        # the broker is retried for as long as the bridge runs
        self.broker_retry_policy = RetryPolicy(
            base_delay_seconds=env.reconnect_base_delay,
            max_delay_seconds=env.reconnect_max_delay,
        )
        self.stop_event = asyncio.Event()

        self.location: Location | None = None
        self.home: Home | None = None
        self.registry: DeviceRegistry | None = None
        self.state_updates: StateUpdateHelper | None = None
        self.discovery: DiscoveryHelper | None = None
        self.session: SessionManager | None = None
        self.session_task: asyncio.Task[None] | None = None
        self.heartbeat_task: asyncio.Task[None] | None = None
        self.mqtt_watchdog_task: asyncio.Task[None] | None = None
        self.outcomes: list[SessionOutcome] = []

    def request_stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("%s stop requested", self.lp)
        self.stop_event.set()

    async def start(self) -> None:
        """Run the bridge until a stop is requested.

        Raises:
            HomelyConfigError: broker unreachable
            LocationError: the account does not have exactly one location
            HomelyAPIError: the location or home snapshot could not be fetched
            SessionFatalError: credentials rejected or reconnect budget exhausted

        """
        try:
            await self.setup()
            if not self.stop_event.is_set():
                await self.supervise()
        finally:
            await self.shutdown()

    async def setup(self) -> None:
        lp = f"{self.lp}setup:"
        await self.mqtt_client.connect()
        logger.info("%s connected to broker", lp)

        self.location = location = await self.cloud_api.get_location()
        # back-to-back API calls trip the vendor's rate limiter
        await asyncio.sleep(self.env.startup_delay)
        self.home = home = await self.cloud_api.get_home(location.location_id)

        self.registry = DeviceRegistry(home.devices)
        self.state_updates = StateUpdateHelper(self.mqtt_client, self.registry)
        self.discovery = DiscoveryHelper(self.mqtt_client, self.registry)
        self.discovery.publish_home(home)
        self.discovery.publish_inventory()

        self.session = SessionManager(
            self.cloud_api,
            home.location_id,
            self.on_device_change,
            self.on_alarm_change,
            socket_url=self.env.socket_url,
            strict=self.env.strict_events,
            handler_timeout=self.env.handler_timeout,
            queue_size=self.env.event_queue_size,
        )
        logger.info(
            "%s ready",
            lp,
            extra={"home": home.name, "devices": len(self.registry), "alarm_state": home.alarm_state},
        )

    # event handlers, called by the session dispatcher

    def on_device_change(self, event: DeviceStateChanged) -> None:
        assert self.state_updates is not None, "state_updates must be initialized"
        self.state_updates.publish_device_change(event)

    def on_alarm_change(self, event: AlarmStateChanged) -> None:
        assert self.home is not None, "home must be initialized"
        assert self.state_updates is not None, "state_updates must be initialized"
        if not event.state:
            logger.warning(
                "%s alarm event without a state, keeping %s",
                self.lp,
                self.home.alarm_state,
                extra={"user_name": event.user_name},
            )
            return
        self.home.alarm_state = event.state
        self.state_updates.publish_alarm(self.home.alarm_state)

    # long running tasks

    async def supervise(self) -> None:
        """Run the session loop and heartbeat until stop or a fatal session error."""
        lp = f"{self.lp}supervise:"
        self.session_task = session_task = asyncio.create_task(self.session_loop(), name=SESSION_TASK_NAME)
        self.heartbeat_task = heartbeat_task = asyncio.create_task(self.heartbeat_loop(), name=HEARTBEAT_TASK_NAME)
        self.mqtt_watchdog_task = watchdog_task = asyncio.create_task(
            self.mqtt_watchdog(), name=MQTT_WATCHDOG_TASK_NAME
        )
        helpers = (heartbeat_task, watchdog_task)
        g.tasks.extend([session_task, *helpers])
        stop_wait = asyncio.create_task(self.stop_event.wait())
        try:
            _ = await asyncio.wait({session_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.stop_event.set()
            stop_wait.cancel()
            with suppress(asyncio.CancelledError):
                await stop_wait
            for task in helpers:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
            for task in (session_task, *helpers):
                if task in g.tasks:
                    g.tasks.remove(task)
            if not session_task.done():
                logger.debug("%s waiting for session to close", lp)
            # re-raises SessionFatalError from the session loop
            with suppress(asyncio.CancelledError):
                await session_task

    async def _sleep_unless_stopped(self, delay: float) -> bool:
        """Sleep for `delay` seconds; return True if a stop was requested meanwhile."""
        try:
            async with asyncio.timeout(delay):
                await self.stop_event.wait()
        except TimeoutError:
            return False
        return True

    async def _wait_unless_stopped(self, event: asyncio.Event) -> bool:
        """Wait for `event`; return True if a stop was requested first."""
        event_wait = asyncio.create_task(event.wait())
        stop_wait = asyncio.create_task(self.stop_event.wait())
        try:
            _ = await asyncio.wait({event_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (event_wait, stop_wait):
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        return self.stop_event.is_set()

    async def session_loop(self) -> None:
        """Re-run the session until stopped, backing off between attempts.

        Only sessions that never reached CONNECTED count against
        `max_reconnect_attempts`; a session that connected and later ended
        resets the count and is always followed by a reconnect.

        Raises:
            SessionFatalError: credentials rejected or max attempts reached

        """
        lp = f"{self.lp}session_loop:"
        assert self.session is not None, "session must be initialized"
        assert self.state_updates is not None, "state_updates must be initialized"
        failures = 0
        while not self.stop_event.is_set():
            self.state_updates.publish_status(CONNECTING_STATUS)
            outcome = await self.session.run(self.stop_event)
            self.outcomes.append(outcome)
            if outcome.cancelled:
                return

            error = outcome.error
            if isinstance(error, HomelyAuthenticationError) and error.credentials_rejected:
                msg = f"homely rejected the credentials: {error}"
                raise SessionFatalError(msg) from error

            if outcome.connected:
                failures = 0
                delay = self.retry_policy.get_delay(0)
            else:
                failures += 1
                if self.retry_policy.exhausted(failures):
                    msg = f"giving up after {failures} consecutive failed session(s), last error: {error}"
                    raise SessionFatalError(msg) from error
                delay = self.retry_policy.get_delay(failures - 1)
            logger.info(
                "%s session ended (%s), reconnecting in %.1fs",
                lp,
                error,
                delay,
                extra={"attempt": failures, "policy": repr(self.retry_policy)},
            )
            if await self._sleep_unless_stopped(delay):
                return

    async def heartbeat_loop(self) -> None:
        """Publish the liveness timestamp every `heartbeat_interval` seconds."""
        assert self.state_updates is not None, "state_updates must be initialized"
        while not self.stop_event.is_set():
            self.state_updates.publish_heartbeat(utc_now())
            if await self._sleep_unless_stopped(self.env.heartbeat_interval):
                return

    async def mqtt_watchdog(self) -> None:
        """Reconnect to the broker whenever a publish finds the connection lost.

        After each reconnect the retained values are published again: the
        home values (with the current alarm state), the inventory, then the
        latest value of every device state changed since startup.
        """
        lp = f"{self.lp}mqtt_watchdog:"
        while not self.stop_event.is_set():
            if await self._wait_unless_stopped(self.mqtt_client.connection_lost):
                return
            attempt = 0
            while True:
                delay = self.broker_retry_policy.get_delay(attempt)
                logger.warning(
                    "%s broker connection lost, reconnecting in %.1fs",
                    lp,
                    delay,
                    extra={"attempt": attempt + 1},
                )
                if await self._sleep_unless_stopped(delay):
                    return
                try:
                    await self.mqtt_client.reconnect()
                except HomelyConfigError as e:
                    logger.warning("%s reconnect failed: %s", lp, e)
                    attempt += 1
                else:
                    break
            logger.info("%s reconnected to broker, republishing retained values", lp)
            self.republish_retained()

    def republish_retained(self) -> int:
        assert self.home is not None, "home must be initialized"
        assert self.discovery is not None, "discovery must be initialized"
        assert self.state_updates is not None, "state_updates must be initialized"
        return (
            self.discovery.publish_home(self.home)
            + self.discovery.publish_inventory()
            + self.state_updates.replay_device_states()
        )

    async def shutdown(self) -> None:
        lp = f"{self.lp}shutdown:"
        self.stop_event.set()
        for task in (self.session_task, self.heartbeat_task, self.mqtt_watchdog_task):
            if task is not None and not task.done():
                logger.debug("%s cancelling %s", lp, task.get_name())
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        await self.mqtt_client.disconnect()
        await self.cloud_api.close()
        logger.info("%s bridge stopped", lp)
