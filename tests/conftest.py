import asyncio
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest


class FakeMqttClient:
    """Minimal fake paho-mqtt v2 client for testing."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *args,
        rc_connect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        puback: bool = True,
        puback_rc: int = 0,
        **unused,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._publish_rc = publish_rc
        self._puback = puback
        self._puback_rc = puback_rc
        self._mid = 0

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_publish = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def tls_set(self):
        self._events["tls"] = True

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        self._events["reconnect_delay"] = (min_delay, max_delay)

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect, self, None, None, self._rc_connect, None
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(self.on_disconnect, self, None, None, 0, None)

    def publish(self, topic, payload, qos=0, retain=False):
        self._mid += 1
        mid = self._mid
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        if self._publish_rc == mqtt.MQTT_ERR_SUCCESS and self._puback and self.on_publish:
            self._loop.call_soon(
                self.on_publish, self, None, mid, self._puback_rc, None
            )
        return SimpleNamespace(rc=self._publish_rc, mid=mid)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return mqtt.MQTT_ERR_SUCCESS, 1


@pytest.fixture
def fake_mqtt(monkeypatch):
    """Replace the paho client with ``FakeMqttClient``; returns its event log."""

    def install(**fake_kwargs) -> dict:
        events: dict = {}
        loop = asyncio.get_running_loop()

        def factory(*args, **kwargs):
            return FakeMqttClient(loop, events, *args, **{**kwargs, **fake_kwargs})

        monkeypatch.setattr("actuator_relay.adapters.mqtt.mqtt.Client", factory)
        return events

    return install
