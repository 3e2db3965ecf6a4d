"""Ledger session manager with automatic access-token renewal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from .adapters.ledger import LedgerAuthError, LedgerClient, LedgerSession

LOGGER = logging.getLogger(__name__)

TokenListener = Callable[[str], Awaitable[None]]


class SessionManager:
    """Signs the device in and keeps its access token fresh."""

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        renewal_ratio: float = 0.85,  # Renew at 85% of token lifetime
        safety_buffer_seconds: int = 120,
        retry_interval_seconds: float = 300.0,
    ) -> None:
        self._ledger = ledger
        self.renewal_ratio = renewal_ratio
        self.safety_buffer_seconds = safety_buffer_seconds
        self.retry_interval_seconds = retry_interval_seconds

        self._current: Optional[LedgerSession] = None
        self._listeners: List[TokenListener] = []
        self._renewal_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> LedgerSession:
        """Sign in; raises LedgerAuthError when credentials are refused."""
        self._current = await self._ledger.sign_in()
        LOGGER.info(
            "Ledger session established, token expires at %s",
            self._current.expires_at,
        )
        return self._current

    async def stop(self) -> None:
        self._stop_event.set()
        if self._renewal_task:
            self._renewal_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._renewal_task
            self._renewal_task = None

    @property
    def access_token(self) -> Optional[str]:
        return self._current.access_token if self._current else None

    def add_token_listener(self, listener: TokenListener) -> None:
        """Register a coroutine called with every renewed access token."""
        self._listeners.append(listener)

    def start_renewal_loop(self) -> None:
        if self._renewal_task is not None and not self._renewal_task.done():
            return
        self._stop_event.clear()
        self._renewal_task = asyncio.create_task(self._renewal_loop())

    async def renew_now(self) -> None:
        """Refresh the token, falling back to a fresh sign-in."""
        current = self._current
        renewed: Optional[LedgerSession] = None
        if current is not None and current.refresh_token:
            try:
                renewed = await self._ledger.refresh(current.refresh_token)
            except LedgerAuthError as exc:
                LOGGER.warning("Refresh token rejected (%s); signing in again", exc)
        if renewed is None:
            renewed = await self._ledger.sign_in()
        self._current = renewed

        LOGGER.info("Ledger token renewed, expires at %s", self._current.expires_at)
        await self._notify(self._current.access_token)

    async def _renewal_loop(self) -> None:
        while not self._stop_event.is_set():
            interval = self._calculate_renewal_interval()
            LOGGER.debug(
                "Token renewal scheduled in %d seconds (%.1f minutes)",
                interval,
                interval / 60.0,
            )

            if await self._wait_stopped(interval):
                break

            try:
                await self.renew_now()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.error("Token renewal failed: %s", exc, exc_info=True)
                LOGGER.info(
                    "Will retry token renewal in %d seconds",
                    self.retry_interval_seconds,
                )
                if await self._wait_stopped(self.retry_interval_seconds):
                    break

    async def _wait_stopped(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _notify(self, token: str) -> None:
        for listener in list(self._listeners):
            try:
                await listener(token)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Token listener failed")

    def _calculate_renewal_interval(self) -> int:
        """Seconds until renewal: renewal_ratio of lifetime minus the safety buffer.

        Never less than 60 seconds.
        """
        if not self._current:
            return 60

        now = datetime.now(timezone.utc)
        lifetime = (self._current.expires_at - self._current.issued_at).total_seconds()
        elapsed = (now - self._current.issued_at).total_seconds()

        renewal_point = (lifetime * self.renewal_ratio) - self.safety_buffer_seconds
        return max(60, int(renewal_point - elapsed))
