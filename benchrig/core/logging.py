"""Logging setup for the rig.

Every component tags its messages as ``[Component] ...``. An operator can
raise one component to DEBUG without flooding the rest, naming it either by
module (``core.topology``, ``benchrig.core.scheduler``) or by its tag
(``TopologyCache``, ``TelemetryScheduler``).
"""

from __future__ import annotations

import re
import sys
from collections.abc import Iterable
from typing import Any, TextIO

from loguru import logger

LOG_FORMAT = (
    "{time:HH:mm:ss.SSS} | {level: <8} | {name}:{line} - {message}"
)

_TAG = re.compile(r"^\[([\w.]+)\]")


def in_debug_scope(record: dict[str, Any], scopes: tuple[str, ...]) -> bool:
    """True when a DEBUG record comes from one of ``scopes``."""
    if record["level"].name != "DEBUG":
        return False
    module = str(record["name"])
    tag_match = _TAG.match(str(record["message"]))
    tag = tag_match.group(1) if tag_match else None
    for scope in scopes:
        if tag == scope or module.startswith(scope):
            return True
        if module.startswith(f"benchrig.{scope}"):
            return True
    return False


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    sink: TextIO | None = None,
) -> tuple[int, ...]:
    """Replace loguru's handlers; return the ids of the ones added."""
    logger.remove()
    target = sink or sys.stderr
    handler_ids = [
        logger.add(target, level=level, format=LOG_FORMAT, colorize=colorize)
    ]

    scopes = tuple(s.strip() for s in debug_scopes if s.strip())
    if scopes and level.upper() != "DEBUG":
        handler_ids.append(
            logger.add(
                target,
                level="DEBUG",
                format=LOG_FORMAT,
                colorize=colorize,
                filter=lambda record: in_debug_scope(record, scopes),
            )
        )
    return tuple(handler_ids)
