"""Main application entry-point for actuator-relay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Optional

from . import constants, topics
from .adapters import (
    LedgerAuthError,
    LedgerClient,
    LedgerError,
    MQTTClient,
    RealtimeClient,
)
from .commands import CommandExecutor, CommandStats
from .config import ConfigurationError, RelayConfig, load_config
from .core import DedupeGuard
from .health import HealthReporter, HealthServer
from .intake import IntakeCoordinator, RelaySession
from .logging import configure_logging
from .publisher import Publisher
from .session_manager import SessionManager

LOGGER = logging.getLogger(__name__)

MQTT_READY_STEP_SECONDS = 0.3


class RelayApp:
    """Coordinates startup and shutdown of the relay.

    Startup order matters: sign in, start the bus connection, poll once,
    start the poll timer, subscribe to the push feed, then wait briefly for
    the bus before announcing readiness. A refused sign-in or missing
    credentials is fatal; an unavailable bus is not.
    """

    def __init__(self, config: Optional[RelayConfig] = None) -> None:
        self._config = config or load_config()
        self._ledger: Optional[LedgerClient] = None
        self._sessions: Optional[SessionManager] = None
        self._mqtt_client: Optional[MQTTClient] = None
        self._realtime: Optional[RealtimeClient] = None
        self._intake: Optional[IntakeCoordinator] = None
        self._executor: Optional[CommandExecutor] = None
        self._session: Optional[RelaySession] = None
        self._stats = CommandStats()
        self._health = HealthReporter(self._stats.as_dict)
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False

    @property
    def session(self) -> Optional[RelaySession]:
        return self._session

    @property
    def stats(self) -> CommandStats:
        return self._stats

    @classmethod
    def start(cls, config: Optional[RelayConfig] = None) -> int:
        instance = cls(config=config)
        logging_config = instance._config.logging
        configure_logging(
            logging_config.level,
            log_path=logging_config.path,
            log_network=logging_config.log_network,
        )
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("actuator-relay received shutdown signal")
            return 0

    async def run(self) -> int:
        """Run until a shutdown signal; returns the process exit status."""

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        try:
            self._config.require_credentials()
        except ConfigurationError as exc:
            LOGGER.error("%s", exc)
            return 1

        self._install_signal_handlers()
        try:
            if not await self._start_services():
                return 1
            await self._shutdown_event.wait()
        finally:
            await self._stop_services()
        return 0

    def request_shutdown(self) -> None:
        LOGGER.info("Shutdown requested")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _start_services(self) -> bool:
        config = self._config
        device = config.device

        await self._health.update("ledger", False, "signing in")
        await self._health.update("mqtt", False, "initialising")

        self._ledger = LedgerClient(config.ledger)
        self._sessions = SessionManager(self._ledger)
        try:
            await self._sessions.start()
        except LedgerAuthError as exc:
            LOGGER.error("Sign-in failed: %s", exc)
            await self._health.update("ledger", False, str(exc))
            return False
        except LedgerError as exc:
            LOGGER.error("Ledger unavailable during sign-in: %s", exc)
            await self._health.update("ledger", False, str(exc))
            return False
        await self._health.update("ledger", True, None)

        self._mqtt_client = self._build_mqtt_client()
        self._mqtt_client.start()

        self._session = RelaySession(
            device_id=device.device_id,
            site_id=device.site_id,
            poll_interval_seconds=config.intake.poll_interval_seconds,
            dedupe=DedupeGuard(
                capacity=config.intake.dedupe_capacity,
                evict_count=config.intake.dedupe_evict_count,
            ),
        )
        self._executor = CommandExecutor(
            self._ledger,
            Publisher(self._mqtt_client, qos=config.mqtt.qos),
            site_id=device.site_id,
            dedupe=self._session.dedupe,
            stats=self._stats,
        )
        self._realtime = RealtimeClient(
            config.ledger,
            device_id=device.device_id,
            access_token=self._sessions.access_token,
            heartbeat_interval=config.resilience.realtime_heartbeat_seconds,
            reconnect_initial=config.resilience.reconnect_initial_seconds,
            reconnect_max=config.resilience.reconnect_max_seconds,
        )
        self._sessions.add_token_listener(self._on_token_renewed)
        self._sessions.start_renewal_loop()

        self._intake = IntakeCoordinator(
            self._executor,
            self._ledger,
            self._session,
            feed=self._realtime,
            throttle_seconds=config.intake.poll_throttle_seconds,
            health=self._health,
        )
        await self._intake.start()

        await self._start_health_server()

        mqtt_ready = await self._wait_for_mqtt(config.resilience.mqtt_ready_wait_seconds)
        LOGGER.info(
            "READY device=%s site=%s mqtt_ready=%s poll=%.1fs",
            device.device_id,
            device.site_id,
            mqtt_ready,
            config.intake.poll_interval_seconds,
        )
        return True

    def _build_mqtt_client(self) -> MQTTClient:
        config = self._config
        client = MQTTClient(
            config.mqtt,
            client_id=f"{constants.APP_NAME}-{config.device.device_id}",
            reconnect_min_delay=config.resilience.reconnect_initial_seconds,
            reconnect_max_delay=config.resilience.reconnect_max_seconds,
        )
        client.register_connect_handler(self._on_mqtt_connect)
        client.register_disconnect_handler(self._on_mqtt_disconnect)

        if config.logging.debug_mqtt_echo:
            client.set_message_handler(_echo_message)
            client.subscribe(topics.debug_topic(config.device.site_id), qos=0)
            LOGGER.info("Echoing bus traffic under %s", topics.debug_topic(config.device.site_id))
        return client

    async def _wait_for_mqtt(self, timeout: float) -> bool:
        client = self._mqtt_client
        if client is None:
            return False
        remaining = timeout
        while not client.is_connected() and remaining > 0:
            await asyncio.sleep(MQTT_READY_STEP_SECONDS)
            remaining -= MQTT_READY_STEP_SECONDS
        return client.is_connected()

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(
            self._health,
            resilience.health_host,
            resilience.health_port,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
        else:
            self._health_server = server

    def _install_signal_handlers(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_shutdown)

    def _remove_signal_handlers(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signum)

    async def _on_token_renewed(self, token: str) -> None:
        if self._realtime is not None:
            await self._realtime.update_access_token(token)

    def _on_mqtt_connect(self, rc: int) -> None:
        self._schedule_health_update("mqtt", True, None)

    def _on_mqtt_disconnect(self, rc: int) -> None:
        detail = "shutdown" if self._stopping else f"disconnected (rc={rc})"
        self._schedule_health_update("mqtt", False, detail)

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.create_task(self._health.update(name, healthy, detail))

    async def _stop_services(self) -> None:
        # In-flight commands are abandoned; the ledger's pending list is
        # the recovery path.
        self._stopping = True
        self._remove_signal_handlers()

        if self._intake is not None:
            await self._intake.stop()
            self._intake = None

        if self._mqtt_client is not None:
            await self._mqtt_client.disconnect(timeout=1.0)
            self._mqtt_client = None

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._sessions is not None:
            await self._sessions.stop()
            self._sessions = None

        if self._ledger is not None:
            await self._ledger.close()
            self._ledger = None

        LOGGER.info("actuator-relay stopped")


async def _echo_message(topic: str, payload: bytes) -> None:
    LOGGER.info("IN %s %s", topic, payload.decode("utf-8", errors="replace"))


async def poll_once(config: RelayConfig) -> int:
    """Sign in, run a single poll cycle and return the number of rows seen."""

    config.require_credentials()
    ledger = LedgerClient(config.ledger)
    mqtt_client = MQTTClient(
        config.mqtt, client_id=f"{constants.APP_NAME}-{config.device.device_id}-once"
    )
    try:
        await ledger.sign_in()
        await mqtt_client.connect(timeout=config.resilience.mqtt_ready_wait_seconds)

        session = RelaySession(
            device_id=config.device.device_id,
            site_id=config.device.site_id,
            poll_interval_seconds=config.intake.poll_interval_seconds,
        )
        executor = CommandExecutor(
            ledger,
            Publisher(mqtt_client, qos=config.mqtt.qos),
            site_id=config.device.site_id,
            dedupe=session.dedupe,
        )
        intake = IntakeCoordinator(
            executor,
            ledger,
            session,
            throttle_seconds=config.intake.poll_throttle_seconds,
        )
        return await intake.poll_once()
    finally:
        await mqtt_client.disconnect(timeout=1.0)
        await ledger.close()
