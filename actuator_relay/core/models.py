"""Data models shared by the command delivery pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class CommandKind(str, Enum):
    """Closed set of canonical command kinds."""

    OPEN_DOOR = "open_door"
    WATER_PULSE = "water_pulse"
    CHAIR_START = "chair_start"
    STOP = "stop"
    FAN_START = "fan_start"
    FAN_STOP = "fan_stop"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class Command:
    """A command row as delivered by the ledger (push or poll)."""

    id: Optional[str]
    command_type: Optional[str]
    payload: Mapping[str, Any] = field(default_factory=dict)
    status: Optional[str] = None

    @classmethod
    def from_record(cls, record: Optional[Mapping[str, Any]]) -> "Command":
        """Build a command from a loosely structured ledger row."""

        record = record or {}
        raw_id = record.get("id")
        raw_type = record.get("command_type")
        payload = record.get("payload")
        return cls(
            id=str(raw_id) if raw_id not in (None, "") else None,
            command_type=str(raw_type) if raw_type is not None else None,
            payload=payload if isinstance(payload, Mapping) else {},
            status=record.get("status"),
        )
