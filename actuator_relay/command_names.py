"""Command type synonyms accepted from the ledger.

Device firmware and dashboards have used several spellings for the same
action over time. Each known spelling maps to exactly one canonical kind;
anything else is ``CommandKind.UNKNOWN``. Matching is exact after trimming
and upper-casing. New spellings are added here, never inferred.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

from .core.models import CommandKind


class CommandTypeNames:
    """Raw command type spellings grouped by canonical kind."""

    OPEN_DOOR = frozenset({"OPEN_DOOR", "DOOR_OPEN", "OPEN_DOOR_COMMAND"})
    WATER_PULSE = frozenset({"DISPENSE_WATER", "WATER_ACTIVATE", "WATER_PULSE"})
    CHAIR_START = frozenset(
        {"CHAIR_START", "CHAIR_ACTIVATE", "CHAIR_START_MINUTES", "START"}
    )
    STOP = frozenset({"STOP", "CHAIR_STOP", "CHAIR_DEACTIVATE"})
    FAN_START = frozenset({"FAN_START", "START_FAN"})
    FAN_STOP = frozenset({"FAN_STOP", "STOP_FAN"})


def _build_table() -> Mapping[str, CommandKind]:
    table: dict[str, CommandKind] = {}
    for names, kind in (
        (CommandTypeNames.OPEN_DOOR, CommandKind.OPEN_DOOR),
        (CommandTypeNames.WATER_PULSE, CommandKind.WATER_PULSE),
        (CommandTypeNames.CHAIR_START, CommandKind.CHAIR_START),
        (CommandTypeNames.STOP, CommandKind.STOP),
        (CommandTypeNames.FAN_START, CommandKind.FAN_START),
        (CommandTypeNames.FAN_STOP, CommandKind.FAN_STOP),
    ):
        for name in names:
            table[name] = kind
    return MappingProxyType(table)


SYNONYMS: Mapping[str, CommandKind] = _build_table()


def normalize_command_type(raw: Optional[str]) -> CommandKind:
    """Map a raw ``command_type`` onto its canonical kind."""
    key = str(raw or "").strip().upper()
    return SYNONYMS.get(key, CommandKind.UNKNOWN)
