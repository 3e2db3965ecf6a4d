"""Realtime change feed for newly inserted ledger commands.

Speaks the Phoenix channel protocol used by the ledger's realtime service:
join a channel with a ``postgres_changes`` filter, keep it alive with
heartbeats and hand every inserted row to the registered callback.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from typing import Any, Mapping, Optional, Set
from urllib.parse import urlencode, urlparse, urlunparse

import aiohttp

from ..config import LedgerConfig
from ..core import RecordCallback, StatusCallback

LOGGER = logging.getLogger(__name__)

PHOENIX_VSN = "1.0.0"


class RealtimeStatus:
    """Channel status names reported to the status callback."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class RealtimeClient:
    """Subscribes to INSERT events on the command table for one device."""

    def __init__(
        self,
        config: LedgerConfig,
        *,
        device_id: str,
        access_token: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat_interval: float = 30.0,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 30.0,
    ) -> None:
        if not config.url or not config.anon_key:
            raise ValueError("Ledger url and anon_key are required")

        self.config = config
        self.device_id = device_id
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self.channel_topic = f"realtime:svc:{device_id}"

        self._access_token = access_token
        self._session = session
        self._owns_session = session is None
        self._callback: Optional[RecordCallback] = None
        self._on_status: Optional[StatusCallback] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._delivery_tasks: Set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._active_ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._ref = 0
        self._join_ref: Optional[str] = None
        self._pending_heartbeat: Optional[str] = None
        self._status: Optional[str] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start(
        self,
        callback: RecordCallback,
        *,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        """Start the listener; rows are delivered as independent tasks."""

        if self._listener_task is not None:
            raise RuntimeError("Realtime client already started")

        self._callback = callback
        self._on_status = on_status

        if self._owns_session and self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None)
            )

        self._stop_event.clear()
        self._listener_task = asyncio.create_task(self._listen_loop())
        await asyncio.sleep(0)

    async def stop(self) -> None:
        self._stop_event.set()

        if self._listener_task is not None:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None

        for task in list(self._delivery_tasks):
            task.cancel()
        self._delivery_tasks.clear()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._set_status(RealtimeStatus.CLOSED)

    async def update_access_token(self, token: str) -> None:
        """Push a renewed access token to the joined channel."""

        self._access_token = token
        ws = self._active_ws
        if ws is None or ws.closed or self._join_ref is None:
            return
        await self._send(
            ws,
            self.channel_topic,
            "access_token",
            {"access_token": token},
        )

    @property
    def status(self) -> Optional[str]:
        return self._status

    @property
    def websocket_url(self) -> str:
        parsed = urlparse(str(self.config.url).rstrip("/"))
        scheme = "wss" if parsed.scheme == "https" else "ws"
        path = parsed.path.rstrip("/") + "/realtime/v1/websocket"
        query = urlencode({"apikey": self.config.anon_key, "vsn": PHOENIX_VSN})
        return urlunparse((scheme, parsed.netloc, path, "", query, ""))

    def build_join_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "INSERT",
                        "schema": self.config.schema,
                        "table": self.config.table,
                        "filter": f"device_id=eq.{self.device_id}",
                    }
                ],
                "private": False,
            }
        }
        if self._access_token:
            payload["access_token"] = self._access_token
        return payload

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _listen_loop(self) -> None:
        backoff = self.reconnect_initial

        while not self._stop_event.is_set():
            try:
                assert self._session is not None
                async with self._session.ws_connect(self.websocket_url) as ws:
                    LOGGER.info("Connected to ledger realtime at %s", self.config.url)
                    backoff = self.reconnect_initial
                    self._active_ws = ws
                    heartbeat = asyncio.create_task(self._heartbeat_loop(ws))
                    try:
                        await self._join(ws)
                        async for message in ws:
                            if self._stop_event.is_set():
                                break
                            if message.type == aiohttp.WSMsgType.TEXT:
                                await self._handle_frame(ws, message.data)
                            elif message.type == aiohttp.WSMsgType.ERROR:
                                raise ws.exception() or RuntimeError("Websocket error")
                    finally:
                        heartbeat.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await heartbeat
                        self._active_ws = None
                        self._join_ref = None
                        self._pending_heartbeat = None
                if not self._stop_event.is_set():
                    self._set_status(RealtimeStatus.CLOSED)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                LOGGER.warning("Ledger realtime error: %s", exc)
                self._set_status(RealtimeStatus.CHANNEL_ERROR)

            if self._stop_event.is_set():
                break
            # Full jitter: sleep uniformly in [0, backoff], then grow backoff.
            await asyncio.sleep(random.uniform(0, backoff))
            backoff = min(backoff * 2, self.reconnect_max)

    async def _join(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._join_ref = await self._send(
            ws, self.channel_topic, "phx_join", self.build_join_payload()
        )

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self.heartbeat_interval)
            if self._pending_heartbeat is not None:
                LOGGER.warning("Ledger realtime heartbeat timed out; reconnecting")
                self._set_status(RealtimeStatus.TIMED_OUT)
                await ws.close()
                return
            self._pending_heartbeat = await self._send(ws, "phoenix", "heartbeat", {})

    async def _handle_frame(
        self, ws: aiohttp.ClientWebSocketResponse, raw_data: str
    ) -> None:
        try:
            frame = json.loads(raw_data)
        except json.JSONDecodeError:
            return

        if not isinstance(frame, dict):
            return

        topic = frame.get("topic")
        event = frame.get("event")
        ref = frame.get("ref")
        payload = frame.get("payload") or {}

        if event == "phx_reply":
            if ref is not None and ref == self._pending_heartbeat:
                self._pending_heartbeat = None
                return
            if ref is not None and ref == self._join_ref and topic == self.channel_topic:
                if payload.get("status") == "ok":
                    self._set_status(RealtimeStatus.SUBSCRIBED)
                else:
                    LOGGER.error(
                        "Ledger realtime join rejected: %s", payload.get("response")
                    )
                    self._set_status(RealtimeStatus.CHANNEL_ERROR)
                    await ws.close()
            return

        if topic != self.channel_topic:
            return

        if event == "postgres_changes":
            record = _extract_insert_record(payload)
            if record is not None:
                self._deliver(record)
        elif event == "phx_error":
            self._set_status(RealtimeStatus.CHANNEL_ERROR)
            await ws.close()
        elif event == "phx_close":
            self._set_status(RealtimeStatus.CLOSED)
            await ws.close()
        elif event == "system":
            LOGGER.debug("Ledger realtime system message: %s", payload)

    def _deliver(self, record: Mapping[str, Any]) -> None:
        callback = self._callback
        if callback is None:
            return

        async def _runner() -> None:
            try:
                result = callback(record)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Realtime command callback failed")

        task = asyncio.create_task(_runner())
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _send(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        topic: str,
        event: str,
        payload: Mapping[str, Any],
    ) -> str:
        self._ref += 1
        ref = str(self._ref)
        frame: dict[str, Any] = {
            "topic": topic,
            "event": event,
            "payload": dict(payload),
            "ref": ref,
        }
        if topic == self.channel_topic:
            frame["join_ref"] = self._join_ref or ref
        await ws.send_json(frame)
        return ref

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        LOGGER.info("Realtime channel status: %s", status)
        if self._on_status is not None:
            try:
                self._on_status(status)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Realtime status callback failed")


def _extract_insert_record(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    data = payload.get("data")
    if not isinstance(data, Mapping):
        return None
    if str(data.get("type", "")).upper() != "INSERT":
        return None
    record = data.get("record")
    return record if isinstance(record, Mapping) else None
