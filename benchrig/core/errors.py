"""Exception hierarchy for the benchrig control plane.

Gateway and discovery errors never escape the aggregator / executor boundary;
they are translated there into degraded snapshots or command outcomes.
"""

from __future__ import annotations

from benchrig.datastructures.type_aliases import ByteSize, CommandString


class BenchRigError(Exception):
    """Base exception for benchrig errors."""

    pass


class GatewayError(BenchRigError):
    """Raised when an external command cannot produce a usable result."""

    def __init__(
        self,
        command: CommandString,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.stdout = stdout
        self.stderr = stderr


class CommandTimeoutError(GatewayError, TimeoutError):
    """Raised when an external command exceeds its timeout."""

    def __init__(
        self,
        command: CommandString,
        timeout: float,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(
            command,
            f"Command timed out after {timeout:.1f}s: {command}",
            stdout=stdout,
            stderr=stderr,
        )
        self.timeout = timeout


class SpawnError(GatewayError):
    """Raised when the OS refuses to start the command."""

    pass


class OutputTooLargeError(GatewayError):
    """Raised when a command writes more than the configured output limit."""

    def __init__(
        self, command: CommandString, limit: ByteSize, *, stream: str = "stdout"
    ) -> None:
        super().__init__(
            command, f"Command {stream} exceeded {limit} bytes: {command}"
        )
        self.limit = limit
        self.stream = stream


class DiscoveryError(BenchRigError):
    """Raised by candidate listing when the cluster directory is unreadable."""

    pass


class InvalidRequestError(BenchRigError):
    """A user-actionable validation failure (wrong node count, target not running)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SubscriptionLimitError(BenchRigError):
    """Raised when a stream already holds the maximum number of subscribers."""

    pass
