"""Tests for the dual-channel intake coordinator."""

import asyncio

import pytest

from actuator_relay.commands import CommandExecutor, CommandOutcome
from actuator_relay.health import HealthReporter
from actuator_relay.intake import IntakeCoordinator, RelaySession
from actuator_relay.publisher import Publisher

from fakes import FakeBus, FakeLedger


class FakeFeed:
    def __init__(self) -> None:
        self.callback = None
        self.on_status = None
        self.stopped = False

    async def start(self, callback, *, on_status=None) -> None:
        self.callback = callback
        self.on_status = on_status

    async def stop(self) -> None:
        self.stopped = True


def _session(**overrides) -> RelaySession:
    values = dict(device_id="svc-test-01", site_id="site-1", poll_interval_seconds=60.0)
    values.update(overrides)
    return RelaySession(**values)


def _build(ledger, *, session=None, feed=None, health=None, throttle=0.0):
    session = session or _session()
    executor = CommandExecutor(
        ledger, Publisher(FakeBus()), site_id=session.site_id, dedupe=session.dedupe
    )
    intake = IntakeCoordinator(
        executor,
        ledger,
        session,
        feed=feed,
        throttle_seconds=throttle,
        health=health,
    )
    return intake, executor


@pytest.mark.asyncio
async def test_start_polls_before_opening_feed() -> None:
    ledger = FakeLedger(
        pending=[
            {"id": "a", "command_type": "OPEN_DOOR"},
            {"id": "b", "command_type": "OPEN_DOOR"},
        ]
    )
    feed = FakeFeed()
    intake, _ = _build(ledger, feed=feed)

    await intake.start()
    try:
        assert ledger.pending_calls == ["svc-test-01"]
        assert ledger.claim_calls == ["a", "b"]
        assert feed.callback is not None
        assert intake.polling
    finally:
        await intake.stop()

    assert feed.stopped
    assert not intake.polling


@pytest.mark.asyncio
async def test_pushed_command_already_polled_is_skipped() -> None:
    ledger = FakeLedger(pending=[{"id": "a", "command_type": "OPEN_DOOR"}])
    feed = FakeFeed()
    intake, executor = _build(ledger, feed=feed)

    await intake.start()
    try:
        await feed.callback({"id": "a", "command_type": "OPEN_DOOR"})
    finally:
        await intake.stop()

    assert ledger.claim_calls == ["a"]
    assert executor.stats.duplicates == 1


@pytest.mark.asyncio
async def test_poll_runs_commands_one_at_a_time() -> None:
    events = []

    class RecordingExecutor:
        async def execute(self, record):
            events.append(("start", record["id"]))
            await asyncio.sleep(0.01)
            events.append(("end", record["id"]))
            return CommandOutcome.COMPLETED

    ledger = FakeLedger(pending=[{"id": "a"}, {"id": "b"}, {"id": "c"}])
    intake = IntakeCoordinator(
        RecordingExecutor(), ledger, _session(), throttle_seconds=0.001
    )

    count = await intake.poll_once()

    assert count == 3
    assert events == [
        ("start", "a"),
        ("end", "a"),
        ("start", "b"),
        ("end", "b"),
        ("start", "c"),
        ("end", "c"),
    ]


@pytest.mark.asyncio
async def test_failing_command_does_not_stop_the_poll() -> None:
    handled = []

    class FlakyExecutor:
        async def execute(self, record):
            if record["id"] == "bad":
                raise RuntimeError("boom")
            handled.append(record["id"])
            return CommandOutcome.COMPLETED

    ledger = FakeLedger(pending=[{"id": "bad"}, {"id": "good"}])
    intake = IntakeCoordinator(FlakyExecutor(), ledger, _session(), throttle_seconds=0)

    assert await intake.poll_once() == 2
    assert handled == ["good"]


@pytest.mark.asyncio
async def test_poll_error_is_reported_and_swallowed() -> None:
    health = HealthReporter()
    ledger = FakeLedger(pending_error=ConnectionError("ledger down"))
    session = _session()
    intake, _ = _build(ledger, session=session, health=health)

    assert await intake.poll_once() == 0

    assert session.last_poll_error == "ledger down"
    assert session.poll_count == 1
    snapshot = await health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["poll"]["healthy"] is False


@pytest.mark.asyncio
async def test_poll_loop_repeats_on_interval() -> None:
    ledger = FakeLedger()
    intake, _ = _build(ledger, session=_session(poll_interval_seconds=0.02))

    intake.start_polling()
    await asyncio.sleep(0.15)
    await intake.stop_polling()

    assert len(ledger.pending_calls) >= 2


@pytest.mark.asyncio
async def test_feed_status_is_tracked() -> None:
    health = HealthReporter()
    feed = FakeFeed()
    session = _session()
    intake, _ = _build(FakeLedger(), session=session, feed=feed, health=health)

    await intake.start()
    try:
        feed.on_status("SUBSCRIBED")
        await asyncio.sleep(0)
        assert session.realtime_status == "SUBSCRIBED"

        snapshot = await health.snapshot()
        components = {item["name"]: item for item in snapshot["components"]}
        assert components["realtime"]["healthy"] is True
    finally:
        await intake.stop()
