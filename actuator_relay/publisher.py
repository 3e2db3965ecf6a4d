"""Concurrent fan-out publishing onto the local message bus."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .core import MessagePublisher

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PublishAttempt:
    """One message destined for one topic.

    ``best_effort`` attempts are secondary compatibility paths: their
    failures are logged quietly, but a success still counts.
    """

    topic: str
    payload: bytes
    best_effort: bool = False

    @classmethod
    def json_message(
        cls, topic: str, message: Mapping[str, Any], *, best_effort: bool = False
    ) -> "PublishAttempt":
        body = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
        return cls(topic=topic, payload=body.encode("utf-8"), best_effort=best_effort)

    @classmethod
    def text_message(cls, topic: str, text: str, *, best_effort: bool = False) -> "PublishAttempt":
        return cls(topic=topic, payload=str(text).encode("ascii"), best_effort=best_effort)


@dataclass(slots=True, frozen=True)
class PublishOutcome:
    attempt: PublishAttempt
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Publisher:
    """Publishes a set of attempts concurrently and reports every outcome.

    All attempts run to completion; a failing attempt never cancels the
    others and never raises out of ``publish_all``.
    """

    def __init__(
        self, client: MessagePublisher, *, qos: int = 1, retain: bool = False
    ) -> None:
        self._client = client
        self._qos = qos
        self._retain = retain

    async def publish_all(
        self, attempts: Iterable[PublishAttempt]
    ) -> List[PublishOutcome]:
        planned: Sequence[PublishAttempt] = list(attempts)
        if not planned:
            return []

        results = await asyncio.gather(
            *(self._publish_one(attempt) for attempt in planned),
            return_exceptions=True,
        )

        outcomes: List[PublishOutcome] = []
        for attempt, result in zip(planned, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                if attempt.best_effort:
                    LOGGER.debug("Best-effort publish to %s failed: %s", attempt.topic, result)
                else:
                    LOGGER.warning("Publish to %s failed: %s", attempt.topic, result)
                outcomes.append(PublishOutcome(attempt=attempt, error=result))
            else:
                outcomes.append(PublishOutcome(attempt=attempt))
        return outcomes

    async def _publish_one(self, attempt: PublishAttempt) -> None:
        await self._client.publish_async(
            attempt.topic, attempt.payload, qos=self._qos, retain=self._retain
        )


def any_succeeded(outcomes: Iterable[PublishOutcome]) -> bool:
    """A command is delivered when at least one path reached the broker."""
    return any(outcome.succeeded for outcome in outcomes)
