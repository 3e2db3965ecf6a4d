"""Command execution pipeline: claim, fan-out publish, complete."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Union

from . import topics
from .command_names import normalize_command_type
from .core import Command, CommandKind, CommandLedger, DedupeGuard, first_present
from .logging import short_id
from .publisher import PublishAttempt, Publisher, any_succeeded

LOGGER = logging.getLogger(__name__)

DEFAULT_DOOR_TARGET = "esp-door-01"
DEFAULT_WATER_TARGET = "esp-cooler-01"
DEFAULT_FAN_TARGET = "esp-fan-01"
DEFAULT_CHAIR_TARGET = "esp-chair-03"

DEFAULT_PULSE_MS = 2000
DEFAULT_CHAIR_MINUTES = 15
MIN_CHAIR_MINUTES = 1
DEFAULT_OFF_MS = 2000
DEFAULT_ON_MS = 20000


class CommandProcessingError(RuntimeError):
    """Raised when an individual command cannot be delivered."""

    def __init__(self, message: str, *, command_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.command_id = command_id


class UnsupportedCommandError(CommandProcessingError):
    """Raised for command types outside the known vocabulary."""


class PublishFailedError(CommandProcessingError):
    """Raised when no publish path for a command succeeded."""


class CommandOutcome(str, Enum):
    """What ``CommandExecutor.execute`` did with a record."""

    INVALID = "invalid"
    DUPLICATE = "duplicate"
    CLAIM_ERROR = "claim_error"
    NOT_CLAIMED = "not_claimed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class CommandStats:
    """Running counters for the health endpoint."""

    received: int = 0
    duplicates: int = 0
    claim_errors: int = 0
    not_claimed: int = 0
    completed: int = 0
    failed: int = 0
    completion_errors: int = 0

    def record(self, outcome: CommandOutcome) -> None:
        if outcome is CommandOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome is CommandOutcome.CLAIM_ERROR:
            self.claim_errors += 1
        elif outcome is CommandOutcome.NOT_CLAIMED:
            self.not_claimed += 1
        elif outcome is CommandOutcome.COMPLETED:
            self.completed += 1
        elif outcome is CommandOutcome.FAILED:
            self.failed += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "received": self.received,
            "duplicates": self.duplicates,
            "claimErrors": self.claim_errors,
            "notClaimed": self.not_claimed,
            "completed": self.completed,
            "failed": self.failed,
            "completionErrors": self.completion_errors,
        }


@dataclass(slots=True, frozen=True)
class PublishPlan:
    """The messages one command fans out to."""

    kind: CommandKind
    target: str
    attempts: Tuple[PublishAttempt, ...]
    summary: str = ""


CommandRecord = Union[Command, Mapping[str, Any], None]


class CommandExecutor:
    """Runs one ledger command through claim, dispatch and completion.

    The dedupe guard is consulted before any RPC and updated once a claimed
    command has finished, whatever the outcome. The ledger's claim RPC is
    the final arbiter of ownership.
    """

    def __init__(
        self,
        ledger: CommandLedger,
        publisher: Publisher,
        *,
        site_id: str,
        dedupe: Optional[DedupeGuard] = None,
        stats: Optional[CommandStats] = None,
    ) -> None:
        self._ledger = ledger
        self._publisher = publisher
        self._site_id = site_id
        self._dedupe = dedupe if dedupe is not None else DedupeGuard()
        self.stats = stats if stats is not None else CommandStats()

    @property
    def dedupe(self) -> DedupeGuard:
        return self._dedupe

    async def execute(self, record: CommandRecord) -> CommandOutcome:
        command = record if isinstance(record, Command) else Command.from_record(record)
        outcome = await self._execute(command)
        self.stats.record(outcome)
        return outcome

    async def _execute(self, command: Command) -> CommandOutcome:
        command_id = command.id
        if not command_id:
            LOGGER.debug("Ignoring command record without id")
            return CommandOutcome.INVALID
        if self._dedupe.seen(command_id):
            return CommandOutcome.DUPLICATE

        self.stats.received += 1
        kind = normalize_command_type(command.command_type)
        LOGGER.info(
            "Command %s received: type=%s kind=%s payload=%s",
            short_id(command_id),
            command.command_type,
            kind.value,
            json.dumps(dict(command.payload), default=str),
        )

        try:
            claimed = await self._ledger.ack_command(command_id)
        except Exception as exc:
            LOGGER.error("ack_command failed for %s: %s", short_id(command_id), exc)
            return CommandOutcome.CLAIM_ERROR

        if not claimed:
            LOGGER.info(
                "Command %s skipped (already claimed or not pending)",
                short_id(command_id),
            )
            return CommandOutcome.NOT_CLAIMED

        try:
            error_message = await self._dispatch(command, kind)
            await self._complete(command_id, error_message)
        finally:
            self._dedupe.mark(command_id)

        return CommandOutcome.COMPLETED if error_message is None else CommandOutcome.FAILED

    async def _dispatch(self, command: Command, kind: CommandKind) -> Optional[str]:
        """Publish the command's plan; return an error message or None."""

        try:
            plan = self.build_plan(command, kind)
            outcomes = await self._publisher.publish_all(plan.attempts)
            LOGGER.info("MQTT -> %s", plan.summary)
            if not any_succeeded(outcomes):
                raise PublishFailedError(
                    "MQTT publish failed (no path succeeded)", command_id=command.id
                )
        except CommandProcessingError as exc:
            LOGGER.error("Command %s failed: %s", short_id(command.id), exc)
            return str(exc)
        except Exception as exc:
            LOGGER.exception("Command %s raised unexpectedly", short_id(command.id))
            return str(exc) or exc.__class__.__name__
        return None

    async def _complete(self, command_id: str, error_message: Optional[str]) -> None:
        success = error_message is None
        try:
            await self._ledger.complete_command(command_id, success, error_message)
        except Exception as exc:
            # A retried completion could re-run the actuation; log and move on.
            self.stats.completion_errors += 1
            LOGGER.error("complete_command RPC error for %s: %s", short_id(command_id), exc)
            return

        if success:
            LOGGER.info("Command %s completed", short_id(command_id))
        else:
            LOGGER.info("Command %s reported failed: %s", short_id(command_id), error_message)

    # ------------------------------------------------------------------
    # Publish plans
    # ------------------------------------------------------------------
    def build_plan(self, command: Command, kind: CommandKind) -> PublishPlan:
        """Translate a command into the topics and payloads it fans out to.

        Raises:
            UnsupportedCommandError: If the kind is ``CommandKind.UNKNOWN``.
        """
        payload = command.payload or {}
        declared_target = resolve_target(payload)
        command_id = str(command.id)

        if kind is CommandKind.OPEN_DOOR:
            return self._plan_open_door(command_id, payload, declared_target)
        if kind is CommandKind.WATER_PULSE:
            return self._plan_water_pulse(command_id, payload, declared_target)
        if kind is CommandKind.FAN_START or (
            kind is CommandKind.CHAIR_START and topics.is_fan_target(declared_target)
        ):
            return self._plan_fan(command_id, declared_target, "START", kind)
        if kind is CommandKind.FAN_STOP or (
            kind is CommandKind.STOP and topics.is_fan_target(declared_target)
        ):
            return self._plan_fan(command_id, declared_target, "STOP", kind)
        if kind is CommandKind.CHAIR_START:
            return self._plan_chair_start(command_id, payload, declared_target)
        if kind is CommandKind.STOP:
            return self._plan_chair_stop(command_id, payload, declared_target)

        raise UnsupportedCommandError(
            f"unknown/unsupported command_type: {command.command_type or ''}",
            command_id=command.id,
        )

    def _plan_open_door(
        self, command_id: str, payload: Mapping[str, Any], declared_target: str
    ) -> PublishPlan:
        target = declared_target or DEFAULT_DOOR_TARGET
        canonical = topics.canonical_topic(self._site_id, target)
        pulse_ms = first_present(payload, "pulse_ms", "args.pulse_ms", default=DEFAULT_PULSE_MS)
        message = {"id": command_id, "action": "OPEN_DOOR", "args": {"pulse_ms": pulse_ms}}
        return PublishPlan(
            kind=CommandKind.OPEN_DOOR,
            target=target,
            attempts=(
                PublishAttempt.json_message(canonical, message),
                PublishAttempt.json_message(topics.door_alias(), message),
            ),
            summary=f"{canonical} & {topics.door_alias()} {_compact(message)}",
        )

    def _plan_water_pulse(
        self, command_id: str, payload: Mapping[str, Any], declared_target: str
    ) -> PublishPlan:
        target = declared_target or DEFAULT_WATER_TARGET
        canonical = topics.canonical_topic(self._site_id, target)
        pulse_ms = first_present(payload, "pulse_ms", "args.pulse_ms", default=DEFAULT_PULSE_MS)
        message = {"id": command_id, "action": "DISPENSE_WATER", "args": {"pulse_ms": pulse_ms}}
        alias = topics.water_alias()
        return PublishPlan(
            kind=CommandKind.WATER_PULSE,
            target=target,
            attempts=(
                PublishAttempt.json_message(canonical, message),
                PublishAttempt.json_message(alias, message),
                PublishAttempt.text_message(alias, "START", best_effort=True),
            ),
            summary=f"{canonical} & {alias} {_compact(message)} (+ 'START')",
        )

    def _plan_fan(
        self, command_id: str, declared_target: str, action: str, kind: CommandKind
    ) -> PublishPlan:
        target = declared_target or DEFAULT_FAN_TARGET
        canonical = topics.canonical_topic(self._site_id, target)
        alias = topics.fan_alias()
        message = {"id": command_id, "action": action, "args": {}}
        return PublishPlan(
            kind=CommandKind.FAN_START if action == "START" else CommandKind.FAN_STOP,
            target=target,
            attempts=(
                PublishAttempt.text_message(alias, action),
                PublishAttempt.json_message(canonical, message, best_effort=True),
            ),
            summary=f"{alias} '{action}' (+ {canonical} JSON)",
        )

    def _plan_chair_start(
        self, command_id: str, payload: Mapping[str, Any], declared_target: str
    ) -> PublishPlan:
        target = declared_target or DEFAULT_CHAIR_TARGET
        canonical = topics.canonical_topic(self._site_id, target)
        alias = topics.chair_alias(target)
        raw_minutes = first_present(
            payload,
            "minutes",
            "chairMinutes",
            "args.minutes",
            default=DEFAULT_CHAIR_MINUTES,
        )
        minutes = max(MIN_CHAIR_MINUTES, _as_number(raw_minutes, DEFAULT_CHAIR_MINUTES))
        message = {"id": command_id, "action": "START", "args": {"minutes": minutes}}

        attempts = [PublishAttempt.json_message(canonical, message)]
        summary = f"{canonical} {_compact(message)}"
        if alias:
            attempts.append(PublishAttempt.text_message(alias, "START"))
            summary += f" (+ {alias}: 'START')"
        return PublishPlan(
            kind=CommandKind.CHAIR_START,
            target=target,
            attempts=tuple(attempts),
            summary=summary,
        )

    def _plan_chair_stop(
        self, command_id: str, payload: Mapping[str, Any], declared_target: str
    ) -> PublishPlan:
        target = declared_target or DEFAULT_CHAIR_TARGET
        canonical = topics.canonical_topic(self._site_id, target)
        alias = topics.chair_alias(target)
        off_ms = first_present(payload, "off_ms", "args.off_ms", default=DEFAULT_OFF_MS)
        on_ms = first_present(payload, "on_ms", "args.on_ms", default=DEFAULT_ON_MS)
        message = {
            "id": command_id,
            "action": "STOP",
            "args": {"off_ms": off_ms, "on_ms": on_ms},
        }

        attempts = [PublishAttempt.json_message(canonical, message)]
        summary = f"{canonical} {_compact(message)}"
        if alias:
            attempts.append(PublishAttempt.text_message(alias, "STOP"))
            summary += f" (+ {alias}: 'STOP')"
        return PublishPlan(
            kind=CommandKind.STOP,
            target=target,
            attempts=tuple(attempts),
            summary=summary,
        )


def resolve_target(payload: Mapping[str, Any]) -> str:
    """Declared target: ``payload.target``, else ``payload.machine_id``, else ""."""
    value = payload.get("target") or payload.get("machine_id") or ""
    return str(value)


def _as_number(value: Any, default: Union[int, float]) -> Union[int, float]:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return default
    return default


def _compact(message: Mapping[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"), default=str)
