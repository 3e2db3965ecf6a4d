"""Adapter modules for external integrations."""

from .ledger import LedgerAuthError, LedgerClient, LedgerError, LedgerSession
from .mqtt import MQTTClient, MQTTConnectionError
from .realtime import RealtimeClient, RealtimeStatus

__all__ = [
    "LedgerAuthError",
    "LedgerClient",
    "LedgerError",
    "LedgerSession",
    "MQTTClient",
    "MQTTConnectionError",
    "RealtimeClient",
    "RealtimeStatus",
]
