"""
External process gateway.

Runs one shell command per call with a timeout and a bounded output buffer.
Both stdout and stderr are read incrementally; a stream that grows past the
limit kills the command's whole process group instead of being buffered,
since process-manager and cluster-introspection commands can emit megabytes
of status text. Every command leads its own session so that pipelines and
backgrounded children die with it.

A non-zero exit status is returned, not raised: validation messages often
arrive on stdout of a failing command and callers classify them.
"""

from __future__ import annotations

import asyncio
import os
import re
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from loguru import logger

from benchrig.datastructures.type_aliases import (
    ByteSize,
    CommandString,
    DurationMilliseconds,
    DurationSeconds,
    ExitCode,
)

from .errors import CommandTimeoutError, OutputTooLargeError, SpawnError

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024
_KILL_GRACE_SECONDS = 2.0

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    """Remove ANSI colour and cursor codes from captured output."""
    return _ANSI_ESCAPE.sub("", text)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Captured result of one finished command."""

    command: CommandString
    stdout: str
    stderr: str
    exit_code: ExitCode
    duration_ms: DurationMilliseconds = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Anything that runs a command the way ``ProcessGateway`` does."""

    async def run(
        self,
        command: CommandString,
        *,
        timeout: DurationSeconds | None = None,
        max_output_bytes: ByteSize | None = None,
    ) -> ProcessResult: ...


class _StreamOverflow(Exception):
    def __init__(self, stream: str) -> None:
        super().__init__(stream)
        self.stream = stream


async def _read_bounded(
    reader: asyncio.StreamReader | None, limit: ByteSize, stream: str
) -> bytes:
    if reader is None:
        return b""
    chunks: list[bytes] = []
    size = 0
    while True:
        chunk = await reader.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise _StreamOverflow(stream)
        chunks.append(chunk)
    return b"".join(chunks)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # The shell leads its own session, so the group id is its pid. Pipeline
    # members and backgrounded children hold our pipes and die with it.
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


async def _abort(
    proc: asyncio.subprocess.Process, readers: list[asyncio.Task[bytes]]
) -> None:
    _kill_group(proc)
    for reader in readers:
        reader.cancel()
    await asyncio.gather(*readers, return_exceptions=True)
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_SECONDS)
    except TimeoutError:
        logger.warning(
            f"[ProcessGateway] pid={proc.pid} not reaped {_KILL_GRACE_SECONDS:.0f}s after kill"
        )


class ProcessGateway:
    """Spawn external commands and capture their output within bounds."""

    def __init__(
        self,
        *,
        cwd: Path | str | None = None,
        default_timeout: DurationSeconds = DEFAULT_TIMEOUT_SECONDS,
        default_max_output_bytes: ByteSize = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self.cwd = Path(cwd) if cwd is not None else None
        self.default_timeout = default_timeout
        self.default_max_output_bytes = default_max_output_bytes

    async def run(
        self,
        command: CommandString,
        *,
        timeout: DurationSeconds | None = None,
        max_output_bytes: ByteSize | None = None,
    ) -> ProcessResult:
        """Run ``command`` through the shell and return its captured output.

        Raises ``CommandTimeoutError``, ``SpawnError`` or
        ``OutputTooLargeError``. Never retries.
        """
        timeout = self.default_timeout if timeout is None else timeout
        limit = (
            self.default_max_output_bytes
            if max_output_bytes is None
            else max_output_bytes
        )
        started = time.perf_counter()

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(command, f"Failed to spawn {command!r}: {e}") from e

        logger.debug(f"[ProcessGateway] pid={proc.pid} started: {command}")

        readers = [
            asyncio.create_task(_read_bounded(proc.stdout, limit, "stdout")),
            asyncio.create_task(_read_bounded(proc.stderr, limit, "stderr")),
        ]
        deadline = time.monotonic() + timeout
        try:
            done, pending = await asyncio.wait(
                readers, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION
            )
            for reader in done:
                error = reader.exception()
                if error is not None:
                    raise error
            if pending:
                raise TimeoutError
            remaining = max(deadline - time.monotonic(), 0.0)
            code = await asyncio.wait_for(proc.wait(), timeout=remaining)
        except TimeoutError as e:
            await _abort(proc, readers)
            logger.warning(
                f"[ProcessGateway] Killed pid={proc.pid} after {timeout:.1f}s: {command}"
            )
            raise CommandTimeoutError(command, timeout) from e
        except _StreamOverflow as e:
            await _abort(proc, readers)
            logger.warning(
                f"[ProcessGateway] Killed pid={proc.pid}, {e.stream} over {limit} bytes: {command}"
            )
            raise OutputTooLargeError(command, limit, stream=e.stream) from None
        except asyncio.CancelledError:
            await _abort(proc, readers)
            raise

        out, err = readers[0].result(), readers[1].result()
        duration_ms = (time.perf_counter() - started) * 1000.0
        result = ProcessResult(
            command=command,
            stdout=strip_ansi(out.decode("utf-8", errors="replace")),
            stderr=strip_ansi(err.decode("utf-8", errors="replace")),
            exit_code=code,
            duration_ms=duration_ms,
        )
        logger.debug(
            f"[ProcessGateway] pid={proc.pid} exited {code} in {duration_ms:.0f}ms"
        )
        return result
