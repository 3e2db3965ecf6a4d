import pytest

from actuator_relay.core import DedupeGuard


def test_mark_and_seen() -> None:
    guard = DedupeGuard()

    assert not guard.seen("a")
    guard.mark("a")
    assert guard.seen("a")
    assert "a" in guard
    assert len(guard) == 1


def test_size_never_exceeds_capacity() -> None:
    guard = DedupeGuard()

    for index in range(2500):
        guard.mark(f"cmd-{index}")
        assert len(guard) <= 2000


def test_eviction_drops_oldest_by_insertion_order() -> None:
    guard = DedupeGuard(capacity=2000, evict_count=500)

    for index in range(2001):
        guard.mark(index)

    assert len(guard) == 1501
    assert not guard.seen(0)
    assert not guard.seen(499)
    assert guard.seen(500)
    assert guard.seen(2000)


def test_remarking_keeps_original_position() -> None:
    guard = DedupeGuard(capacity=3, evict_count=1)

    guard.mark("first")
    guard.mark("second")
    guard.mark("third")
    guard.mark("first")
    guard.mark("fourth")

    assert list(guard) == ["second", "third", "fourth"]


def test_invalid_bounds_rejected() -> None:
    with pytest.raises(ValueError):
        DedupeGuard(capacity=0)
    with pytest.raises(ValueError):
        DedupeGuard(evict_count=0)
