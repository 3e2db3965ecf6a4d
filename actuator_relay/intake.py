"""Dual-channel command intake: realtime push plus a polling safety net."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .adapters.realtime import RealtimeStatus
from .commands import CommandExecutor, CommandRecord
from .core import CommandFeed, CommandLedger, DedupeGuard
from .health import HealthReporter

LOGGER = logging.getLogger(__name__)


@dataclass
class RelaySession:
    """Process-lifetime state shared by both intake channels."""

    device_id: str
    site_id: str
    poll_interval_seconds: float
    dedupe: DedupeGuard = field(default_factory=DedupeGuard)
    realtime_status: Optional[str] = None
    poll_count: int = 0
    last_poll_at: Optional[datetime] = None
    last_poll_error: Optional[str] = None


class IntakeCoordinator:
    """Feeds commands from the push feed and the periodic poll into the executor.

    Either channel may deliver the same command; the dedupe guard and the
    ledger claim reconcile duplicates. The poll alone is sufficient for
    correctness, the push feed only lowers latency.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        ledger: CommandLedger,
        session: RelaySession,
        *,
        feed: Optional[CommandFeed] = None,
        throttle_seconds: float = 0.12,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self._executor = executor
        self._ledger = ledger
        self._feed = feed
        self.session = session
        self.throttle_seconds = throttle_seconds
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._feed_started = False
        self._health = health

    async def start(self) -> None:
        """Poll once, start the poll timer, then open the push feed."""

        await self.poll_once()
        self.start_polling()

        if self._feed is not None and not self._feed_started:
            await self._feed.start(self._handle_pushed, on_status=self._handle_status)
            self._feed_started = True

    async def stop(self) -> None:
        await self.stop_polling()
        if self._feed is not None and self._feed_started:
            await self._feed.stop()
            self._feed_started = False

    def start_polling(self, interval_seconds: Optional[float] = None) -> None:
        if interval_seconds is not None:
            self.session.poll_interval_seconds = interval_seconds
        if self._poll_task is not None:
            self._poll_task.cancel()
        self._poll_task = asyncio.create_task(self._poll_loop())
        LOGGER.info(
            "Polling every %.1fs (safety net)", self.session.poll_interval_seconds
        )

    async def stop_polling(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._poll_task
        self._poll_task = None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def poll_once(self) -> int:
        """Fetch pending commands and run them one by one.

        Returns the number of rows the ledger reported.
        """

        session = self.session
        session.poll_count += 1
        session.last_poll_at = datetime.now(timezone.utc)

        try:
            rows = await self._ledger.pending_for_device(session.device_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            session.last_poll_error = str(exc)
            LOGGER.error("pending_for_device failed: %s", exc)
            await self._report("poll", False, str(exc))
            return 0

        session.last_poll_error = None
        await self._report("poll", True, None)
        if not rows:
            return 0

        LOGGER.info("Poll picked up %d command(s)", len(rows))
        for row in rows:
            await self._run(row)
            if self.throttle_seconds > 0:
                await asyncio.sleep(self.throttle_seconds)
        return len(rows)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.session.poll_interval_seconds)
            await self.poll_once()

    async def _handle_pushed(self, record: Mapping[str, Any]) -> None:
        await self._run(record)

    def _handle_status(self, status: str) -> None:
        self.session.realtime_status = status
        if self._health is not None:
            asyncio.create_task(
                self._health.update("realtime", status == RealtimeStatus.SUBSCRIBED, status)
            )

    async def _report(self, name: str, healthy: bool, detail: Optional[str]) -> None:
        if self._health is not None:
            await self._health.update(name, healthy, detail)

    async def _run(self, record: CommandRecord) -> None:
        try:
            await self._executor.execute(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Command execution raised; continuing with next command")
