"""Topic naming for actuator commands.

Canonical topics are scoped by site and target:
    site/{siteId}/esp/{target}/cmd

Alias topics are fixed legacy names kept for firmware that never moved to
the canonical scheme. Once an alias ships to the fleet it stays.
"""

from __future__ import annotations

import re
from typing import Optional

DOOR_ALIAS = "door/control"
WATER_ALIAS = "water/control"
FAN_ALIAS = "fan/control"

_CHAIR_PATTERN = re.compile(r"(?:esp-)?chair-?(\d+)")


def canonical_topic(site_id: str, target: str) -> str:
    """Return the canonical command topic for a target (no validation)."""
    return f"site/{site_id}/esp/{target}/cmd"


def debug_topic(site_id: str) -> str:
    """Wildcard covering every topic under the site prefix."""
    return f"site/{site_id}/#"


def door_alias() -> str:
    return DOOR_ALIAS


def water_alias() -> str:
    return WATER_ALIAS


def fan_alias() -> str:
    return FAN_ALIAS


def chair_alias(target: Optional[str]) -> Optional[str]:
    """Resolve the legacy ``chair<N>/control`` topic for a chair target.

    ``esp-chair-07``, ``chair7`` and ``ESP-CHAIR07`` all map to
    ``chair7/control``. Returns None when the target carries no chair number.
    """
    match = _CHAIR_PATTERN.search(str(target or "").lower())
    if not match:
        return None
    return f"chair{int(match.group(1), 10)}/control"


def is_fan_target(target: Optional[str]) -> bool:
    """Fan actuators are recognised by name, whatever the command says."""
    return "fan" in str(target or "").lower()
