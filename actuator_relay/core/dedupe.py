"""Bounded recent-id tracker used to skip already handled commands.

The guard only remembers ids this process has finished with. It cannot
arbitrate between processes or across restarts; the ledger's claim RPC
does that.
"""

from __future__ import annotations

import logging
from typing import Dict, Hashable, Iterator

from .. import constants

LOGGER = logging.getLogger(__name__)


class DedupeGuard:
    """Insertion-ordered id set evicting its oldest entries when full.

    Usage:
        guard = DedupeGuard()

        if guard.seen(command_id):
            return

        ...claim, dispatch, complete...

        guard.mark(command_id)
    """

    def __init__(
        self,
        capacity: int = constants.DEFAULT_DEDUPE_CAPACITY,
        evict_count: int = constants.DEFAULT_DEDUPE_EVICT_COUNT,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        if evict_count < 1:
            raise ValueError("evict_count must be positive")
        # dict preserves insertion order; values are unused.
        self._ids: Dict[Hashable, None] = {}
        self._capacity = capacity
        self._evict_count = evict_count

    def seen(self, command_id: Hashable) -> bool:
        """Return True if the id has already been marked in this process."""
        return command_id in self._ids

    def mark(self, command_id: Hashable) -> None:
        """Remember an id; re-marking keeps its original position."""
        self._ids.setdefault(command_id, None)
        if len(self._ids) > self._capacity:
            self._evict_oldest()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._ids)

    def _evict_oldest(self) -> None:
        count = min(self._evict_count, len(self._ids))
        for key in list(self._ids)[:count]:
            del self._ids[key]
        LOGGER.debug(
            "Evicted %d oldest command ids (capacity=%d)", count, self._capacity
        )
