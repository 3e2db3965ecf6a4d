"""Protocol definitions for the ledger and message-bus collaborators."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol


RecordCallback = Callable[[Mapping[str, Any]], Awaitable[None] | None]
StatusCallback = Callable[[str], None]


class CommandLedger(Protocol):
    """RPC surface of the backend command ledger."""

    async def pending_for_device(self, device_id: str) -> list[dict[str, Any]]:
        """Return every pending command row addressed to the device."""
        ...

    async def ack_command(self, command_id: str) -> bool:
        """Claim a command.

        Returns:
            True only if this call moved the command from pending to claimed.
        """
        ...

    async def complete_command(
        self, command_id: str, success: bool, error_message: Optional[str]
    ) -> None:
        """Record the terminal outcome of a claimed command."""
        ...


class CommandFeed(Protocol):
    """Push source delivering newly inserted command rows."""

    async def start(
        self,
        callback: RecordCallback,
        *,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        """Begin delivering inserted rows to the callback."""
        ...

    async def stop(self) -> None:
        ...


class MessagePublisher(Protocol):
    """Minimal contract for the message-bus client used by the publisher."""

    async def publish_async(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        """Publish and wait for the broker to accept the message.

        Raises:
            MQTTConnectionError: If the message could not be delivered.
        """
        ...
