"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt

from ..config import MQTTConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to connect or deliver a message."""


def _reason_value(reason_code) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client."""

    def __init__(
        self,
        config: MQTTConfig,
        *,
        client_id: str,
        reconnect_min_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = config.keepalive
        self.reconnect_min_delay = reconnect_min_delay
        self.reconnect_max_delay = reconnect_max_delay

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._pending_publishes: Dict[int, asyncio.Future[None]] = {}
        self._subscriptions: List[Tuple[str, int]] = []
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []

    def start(self) -> None:
        """Begin connecting in the background; paho keeps retrying until stopped."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.config.tls:
            client.tls_set()

        client.reconnect_delay_set(
            min_delay=max(1, int(self.reconnect_min_delay)),
            max_delay=max(1, int(self.reconnect_max_delay)),
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s",
            self.config.host,
            self.config.port,
        )

        client.connect_async(self.config.host, self.config.port, self.keepalive)
        client.loop_start()

    async def wait_until_connected(self, timeout: float) -> bool:
        """Return whether the broker accepted the connection within ``timeout``."""

        event = self._connected_event
        if self._connected or event is None:
            return self._connected

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self._connected:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            if not self._connected:
                # Refused CONNACK; paho retries on its own.
                event.clear()
                await asyncio.sleep(min(remaining, 0.1))
        return self._connected

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self.start()
        client = self._client
        assert client is not None and self._connected_event is not None

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        finally:
            self._client.loop_stop()
            self._client = None
            self._connected = False
            self._fail_pending_publishes("MQTT client disconnected")

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> mqtt.MQTTMessageInfo:
        """Queue a message with paho and return its delivery info."""

        if not self._client or not self._connected:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
        return info

    async def publish_async(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False,
    ) -> None:
        """Publish and wait until the broker has accepted the message.

        While a connection attempt is still in progress the call first waits
        for it. For QoS 1 it then waits for PUBACK; for QoS 0 until paho has
        written the packet. Each wait is bounded by ``publish_timeout_seconds``.
        """

        loop = self._loop or asyncio.get_running_loop()
        if self._client is not None and not self._connected:
            await self.wait_until_connected(self.config.publish_timeout_seconds)
        info = self.publish(topic, payload, qos=qos, retain=retain)

        future: asyncio.Future[None] = loop.create_future()
        self._pending_publishes[info.mid] = future
        try:
            await asyncio.wait_for(
                future, timeout=self.config.publish_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(
                f"Timed out waiting for broker acknowledgement on {topic}"
            ) from exc
        finally:
            self._pending_publishes.pop(info.mid, None)

    def subscribe(self, topic: str, qos: int = 1) -> None:
        """Subscribe now if connected, and again after every reconnect."""

        if (topic, qos) not in self._subscriptions:
            self._subscriptions.append((topic, qos))
        if not self._client or not self._connected:
            return
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
            for topic, qos in list(self._subscriptions):
                client.subscribe(topic, qos=qos)
            if self._loop:
                self._loop.call_soon_threadsafe(self._set_event, self._connected_event)
                for handler in self._connect_handlers:
                    self._loop.call_soon_threadsafe(handler, rc)
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
            if self._loop:
                self._loop.call_soon_threadsafe(self._set_event, self._connected_event)

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        if self._loop:
            self._loop.call_soon_threadsafe(self._set_event, self._disconnect_event)
            for handler in self._disconnect_handlers:
                self._loop.call_soon_threadsafe(handler, rc)

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None) -> None:
        loop = self._loop
        if loop is None:
            return
        rc = _reason_value(reason_code) if reason_code is not None else 0
        loop.call_soon_threadsafe(self._resolve_publish, mid, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler = self._message_handler
        loop = self._loop
        if not handler or not loop:
            return

        try:
            result = handler(message.topic, message.payload)
            if asyncio.iscoroutine(result):
                asyncio.run_coroutine_threadsafe(result, loop)
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("MQTT message handler raised an exception")

    # ------------------------------------------------------------------
    # Loop-side helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _set_event(event: Optional[asyncio.Event]) -> None:
        if event is not None:
            event.set()

    def _resolve_publish(self, mid: int, rc: int) -> None:
        future = self._pending_publishes.get(mid)
        if future is None or future.done():
            return
        # PUBACK reason codes >= 0x80 are failures (MQTT v5); v3.1.1 always reports 0.
        if rc >= 0x80:
            future.set_exception(
                MQTTConnectionError(f"Broker rejected publish (rc={rc})")
            )
        else:
            future.set_result(None)

    def _fail_pending_publishes(self, reason: str) -> None:
        pending = list(self._pending_publishes.values())
        self._pending_publishes.clear()
        for future in pending:
            if not future.done():
                future.set_exception(MQTTConnectionError(reason))
