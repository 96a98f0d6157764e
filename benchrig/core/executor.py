"""
Command executor for administrative actions.

Flow of one ``execute()``:

1. categorize the command (explicit category or the ordered rule table);
2. topology-affecting commands invalidate the topology cache before the
   gateway call, and again once it returns, before the result is reported;
3. run the command through the gateway with a bounded timeout;
4. classify: exit 0 is always ``Success`` (a recognised marker only sharpens
   the summary); a non-zero exit whose output carries a known validation
   phrase is ``ValidationFailure``; anything else is ``Fatal``;
5. request an out-of-band telemetry refresh, whatever the outcome.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from benchrig.datastructures.type_aliases import (
    ByteSize,
    CommandLabel,
    CommandString,
    DurationMilliseconds,
    DurationSeconds,
    ExitCode,
    Timestamp,
)

from .classification import (
    DEFAULT_CATEGORY_RULES,
    DEFAULT_SUCCESS_RULES,
    DEFAULT_VALIDATION_RULES,
    CategoryRule,
    CommandCategory,
    MarkerRule,
    categorize,
    match_rules,
)
from .errors import GatewayError
from .gateway import CommandRunner

DEFAULT_COMMAND_TIMEOUT = 30.0


@dataclass(frozen=True, slots=True)
class Success:
    message: str


@dataclass(frozen=True, slots=True)
class ValidationFailure:
    reason: str


@dataclass(frozen=True, slots=True)
class Fatal:
    error: str


type CommandOutcome = Success | ValidationFailure | Fatal


@dataclass(frozen=True, slots=True)
class CommandExecution:
    """Report of one administrative command."""

    command: CommandString
    label: CommandLabel
    category: CommandCategory
    started_at: Timestamp
    duration_ms: DurationMilliseconds
    outcome: CommandOutcome
    exit_code: ExitCode | None = None
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Success)

    @property
    def message(self) -> str:
        match self.outcome:
            case Success(message=message):
                return message
            case ValidationFailure(reason=reason):
                return reason
            case Fatal(error=error):
                return error
        raise AssertionError(f"unknown outcome {self.outcome!r}")


class TopologyInvalidator(Protocol):
    def invalidate(self) -> None: ...


class RefreshTrigger(Protocol):
    def request_refresh(self) -> bool: ...


def rejected(
    command: CommandString,
    label: CommandLabel,
    reason: str,
    category: CommandCategory = CommandCategory.OTHER,
) -> CommandExecution:
    """An execution that failed validation before anything was spawned."""
    return CommandExecution(
        command=command,
        label=label,
        category=category,
        started_at=time.time(),
        duration_ms=0.0,
        outcome=ValidationFailure(reason),
    )


class CommandExecutor:
    """Runs named administrative commands and classifies their outcome."""

    def __init__(
        self,
        gateway: CommandRunner,
        topology: TopologyInvalidator,
        refresher: RefreshTrigger | None = None,
        *,
        timeout: DurationSeconds = DEFAULT_COMMAND_TIMEOUT,
        max_output_bytes: ByteSize | None = None,
        category_rules: Sequence[CategoryRule] = DEFAULT_CATEGORY_RULES,
        success_rules: Sequence[MarkerRule] = DEFAULT_SUCCESS_RULES,
        validation_rules: Sequence[MarkerRule] = DEFAULT_VALIDATION_RULES,
    ) -> None:
        self.gateway = gateway
        self.topology = topology
        self.refresher = refresher
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes
        self.category_rules = tuple(category_rules)
        self.success_rules = tuple(success_rules)
        self.validation_rules = tuple(validation_rules)

    async def execute(
        self,
        command: CommandString,
        label: CommandLabel,
        *,
        category: CommandCategory | None = None,
        timeout: DurationSeconds | None = None,
    ) -> CommandExecution:
        category = category or categorize(command, self.category_rules)
        topology_change = category.affects_topology
        if topology_change:
            self.topology.invalidate()

        logger.info(f"[CommandExecutor] Command started: {label} ({command})")
        started_at = time.time()
        started = time.perf_counter()
        exit_code: ExitCode | None = None
        stdout = stderr = ""

        try:
            result = await self.gateway.run(
                command,
                timeout=self.timeout if timeout is None else timeout,
                max_output_bytes=self.max_output_bytes,
            )
        except GatewayError as e:
            stdout, stderr = e.stdout, e.stderr
            outcome: CommandOutcome = Fatal(str(e))
        else:
            exit_code = result.exit_code
            stdout, stderr = result.stdout, result.stderr
            outcome = self.classify(label, result.exit_code, stdout, stderr)
        finally:
            if topology_change:
                self.topology.invalidate()

        execution = CommandExecution(
            command=command,
            label=label,
            category=category,
            started_at=started_at,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            outcome=outcome,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )
        self._report(execution)

        if self.refresher is not None:
            self.refresher.request_refresh()
        return execution

    def classify(
        self, label: CommandLabel, exit_code: ExitCode, stdout: str, stderr: str
    ) -> CommandOutcome:
        if exit_code == 0:
            summary = match_rules(stdout.strip(), self.success_rules)
            return Success(summary or f"{label} completed")

        for output in (stdout, stderr):
            reason = match_rules(output.strip(), self.validation_rules)
            if reason:
                return ValidationFailure(reason)

        detail = (stderr.strip() or stdout.strip()).splitlines()
        first_line = detail[0][:120] if detail else "no output"
        return Fatal(f"{label} exited with code {exit_code}: {first_line}")

    def _report(self, execution: CommandExecution) -> None:
        duration = f"{execution.duration_ms:.0f}ms"
        match execution.outcome:
            case Success(message=message):
                logger.info(
                    f"[CommandExecutor] Command succeeded: {execution.label} in {duration} - {message}"
                )
            case ValidationFailure(reason=reason):
                logger.warning(
                    f"[CommandExecutor] Command rejected: {execution.label} in {duration} - {reason}"
                )
            case Fatal(error=error):
                logger.error(
                    f"[CommandExecutor] Command failed: {execution.label} in {duration} - {error}\n"
                    f"--- stdout ---\n{execution.stdout}\n--- stderr ---\n{execution.stderr}"
                )
