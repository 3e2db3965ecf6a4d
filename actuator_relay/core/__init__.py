"""Core primitives for actuator-relay."""

from .dedupe import DedupeGuard
from .models import Command, CommandKind
from .protocols import (
    CommandFeed,
    CommandLedger,
    MessagePublisher,
    RecordCallback,
    StatusCallback,
)
from .utils import first_present

__all__ = [
    "Command",
    "CommandFeed",
    "CommandKind",
    "CommandLedger",
    "DedupeGuard",
    "MessagePublisher",
    "RecordCallback",
    "StatusCallback",
    "first_present",
]
