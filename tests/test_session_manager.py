"""Tests for ledger session renewal."""

from datetime import datetime, timedelta, timezone

import pytest

from actuator_relay.adapters import LedgerAuthError, LedgerSession
from actuator_relay.session_manager import SessionManager


def _session(token: str, *, lifetime: int = 3600, refresh: str | None = "refresh") -> LedgerSession:
    issued_at = datetime.now(timezone.utc)
    return LedgerSession(
        access_token=token,
        refresh_token=refresh,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=lifetime),
    )


class FakeAuthLedger:
    def __init__(
        self,
        *,
        refresh_token: str | None = "refresh",
        reject: bool = False,
        reject_refresh: bool = False,
    ) -> None:
        self.refresh_token = refresh_token
        self.reject = reject
        self.reject_refresh = reject_refresh
        self.calls: list[str] = []

    async def sign_in(self) -> LedgerSession:
        self.calls.append("sign_in")
        if self.reject:
            raise LedgerAuthError("Invalid login credentials", status=400)
        return _session(f"token-{len(self.calls)}", refresh=self.refresh_token)

    async def refresh(self, refresh_token: str) -> LedgerSession:
        self.calls.append(f"refresh:{refresh_token}")
        if self.reject_refresh:
            raise LedgerAuthError("Invalid Refresh Token: Already Used", status=400)
        return _session(f"token-{len(self.calls)}", refresh=self.refresh_token)


@pytest.mark.asyncio
async def test_start_signs_in():
    ledger = FakeAuthLedger()
    manager = SessionManager(ledger)  # type: ignore[arg-type]

    session = await manager.start()

    assert session.access_token == "token-1"
    assert manager.access_token == "token-1"


@pytest.mark.asyncio
async def test_start_propagates_rejected_credentials():
    manager = SessionManager(FakeAuthLedger(reject=True))  # type: ignore[arg-type]

    with pytest.raises(LedgerAuthError):
        await manager.start()


@pytest.mark.asyncio
async def test_renew_prefers_refresh_and_notifies_listeners():
    ledger = FakeAuthLedger()
    manager = SessionManager(ledger)  # type: ignore[arg-type]
    received: list[str] = []

    async def listener(token: str) -> None:
        received.append(token)

    manager.add_token_listener(listener)
    await manager.start()
    await manager.renew_now()

    assert ledger.calls == ["sign_in", "refresh:refresh"]
    assert received == ["token-2"]


@pytest.mark.asyncio
async def test_renew_without_refresh_token_signs_in_again():
    ledger = FakeAuthLedger(refresh_token=None)
    manager = SessionManager(ledger)  # type: ignore[arg-type]

    await manager.start()
    await manager.renew_now()

    assert ledger.calls == ["sign_in", "sign_in"]


@pytest.mark.asyncio
async def test_renewal_interval_leaves_safety_margin():
    ledger = FakeAuthLedger()
    manager = SessionManager(ledger)  # type: ignore[arg-type]
    await manager.start()

    interval = manager._calculate_renewal_interval()

    # 85% of an hour minus two minutes.
    assert 2935 <= interval <= 2940


@pytest.mark.asyncio
async def test_renewal_interval_has_floor():
    manager = SessionManager(FakeAuthLedger())  # type: ignore[arg-type]

    assert manager._calculate_renewal_interval() == 60


@pytest.mark.asyncio
async def test_stop_cancels_renewal_loop():
    manager = SessionManager(FakeAuthLedger())  # type: ignore[arg-type]
    await manager.start()
    manager.start_renewal_loop()

    await manager.stop()

    assert manager._renewal_task is None


@pytest.mark.asyncio
async def test_rejected_refresh_token_falls_back_to_sign_in():
    ledger = FakeAuthLedger(reject_refresh=True)
    manager = SessionManager(ledger)  # type: ignore[arg-type]
    received: list[str] = []

    async def listener(token: str) -> None:
        received.append(token)

    manager.add_token_listener(listener)
    await manager.start()
    await manager.renew_now()
    await manager.renew_now()

    assert ledger.calls == [
        "sign_in",
        "refresh:refresh",
        "sign_in",
        "refresh:refresh",
        "sign_in",
    ]
    assert received == ["token-3", "token-5"]
    assert manager.access_token == "token-5"
