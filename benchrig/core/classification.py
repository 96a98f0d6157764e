"""
Ordered pattern tables for classifying commands and their output.

Three tables, each scanned first-match-wins:

- ``DEFAULT_CATEGORY_RULES`` decides whether a command changes cluster
  topology (and therefore invalidates the topology cache);
- ``DEFAULT_SUCCESS_RULES`` turns recognised stdout markers of a successful
  command into a short summary;
- ``DEFAULT_VALIDATION_RULES`` recognises user-actionable failures in the
  output of a command that exited non-zero.

The tables are plain data so they can be extended and tested without
spawning anything.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from benchrig.datastructures.type_aliases import CommandString

type Summarizer = Callable[[re.Match[str], str], str | None]


class CommandCategory(Enum):
    TOPOLOGY = "topology"
    PROCESS = "process"
    BENCHMARK = "benchmark"
    STATUS = "status"
    OTHER = "other"

    @property
    def affects_topology(self) -> bool:
        return self is CommandCategory.TOPOLOGY


@dataclass(frozen=True, slots=True)
class CategoryRule:
    pattern: re.Pattern[str]
    category: CommandCategory


@dataclass(frozen=True, slots=True)
class MarkerRule:
    """A pattern and the function that summarises its match.

    A summarizer may return None to decline, letting later rules try.
    """

    name: str
    pattern: re.Pattern[str]
    summarize: Summarizer


def _fixed(text: str) -> Summarizer:
    return lambda _match, _output: text


def format_number(value: int | float) -> str:
    """Thousands separators: 1234567 -> '1,234,567'."""
    return f"{int(value):,}"


def _benchmark_summary(match: re.Match[str], _output: str) -> str:
    framework, rps, latency, total = match.groups()
    return (
        f"Benchmark {framework}: {format_number(int(rps))} req/s "
        f"({latency}ms avg, {format_number(int(total))} total)"
    )


def _online_summary(_match: re.Match[str], output: str) -> str | None:
    count = len(re.findall(r"\bonline\b", output))
    return f"{count} processes online" if count else None


def _not_running_instead(match: re.Match[str], _output: str) -> str:
    return f"Cannot benchmark {match.group(1)} - {match.group(2).strip()} is running instead"


DEFAULT_CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(re.compile(r"\bredis-cli\b"), CommandCategory.STATUS),
    CategoryRule(
        re.compile(r"\bredis(?:\.js)?\b.*\s-(?:status|help)\b"), CommandCategory.STATUS
    ),
    CategoryRule(
        re.compile(r"\bredis(?:\.js)?\b.*\s-(?:setup|stop|resume|clean)\b"),
        CommandCategory.TOPOLOGY,
    ),
    CategoryRule(re.compile(r"\bbench(?:\.js)?\b|\bautocannon\b"), CommandCategory.BENCHMARK),
    CategoryRule(
        re.compile(r"\bpm2\b(?:\.js)?.*\s-?(?:ls|list|jlist|status)\b"),
        CommandCategory.STATUS,
    ),
    CategoryRule(re.compile(r"\bpm2(?:\.js)?\b"), CommandCategory.PROCESS),
)

DEFAULT_SUCCESS_RULES: tuple[MarkerRule, ...] = (
    MarkerRule(
        "started",
        re.compile(r"([\w-]+) started successfully"),
        lambda m, _o: f"Started {m.group(1)}",
    ),
    MarkerRule(
        "stopped",
        re.compile(r"([\w-]+) stopped successfully"),
        lambda m, _o: f"Stopped {m.group(1)}",
    ),
    MarkerRule(
        "all-stopped",
        re.compile(r"All frameworks stopped"),
        _fixed("Stopped all worker processes"),
    ),
    MarkerRule(
        "all-deleted",
        re.compile(r"All frameworks deleted"),
        _fixed("Deleted all worker processes"),
    ),
    MarkerRule(
        "restarted",
        re.compile(r"([\w-]+) restarted successfully"),
        lambda m, _o: f"Restarted {m.group(1)}",
    ),
    MarkerRule(
        "all-restarted",
        re.compile(r"All frameworks restarted"),
        _fixed("Restarted all worker processes"),
    ),
    MarkerRule(
        "launched",
        re.compile(r"App \[([\w-]+)\] launched \((\d+) instances?\)"),
        lambda m, _o: f"{m.group(1)}: {m.group(2)} instances",
    ),
    MarkerRule(
        "cluster-ready",
        re.compile(r"Redis Cluster.*\bready\b|cluster created successfully", re.IGNORECASE | re.DOTALL),
        _fixed("Cluster ready"),
    ),
    MarkerRule(
        "cluster-stopped",
        re.compile(r"cluster stopped", re.IGNORECASE),
        lambda _m, o: f"Cluster stopped ({len(re.findall(r'Stopped .* on port', o))} nodes)",
    ),
    MarkerRule(
        "cluster-resumed",
        re.compile(r"cluster resumed", re.IGNORECASE),
        lambda _m, o: f"Cluster resumed ({len(re.findall(r'Resumed .* on port', o))} nodes)",
    ),
    MarkerRule(
        "cluster-cleaned",
        re.compile(r"cluster cleaned", re.IGNORECASE),
        _fixed("Cluster data cleaned"),
    ),
    MarkerRule(
        "benchmark-result",
        re.compile(r"BENCHMARK_RESULT:([\w-]+):(\d+):([0-9.]+):(\d+)"),
        _benchmark_summary,
    ),
    MarkerRule("online-count", re.compile(r"\bonline\b"), _online_summary),
)

DEFAULT_VALIDATION_RULES: tuple[MarkerRule, ...] = (
    MarkerRule(
        "not-running-instead",
        re.compile(r"([\w-]+) is not running.*?Currently running: ([^\n]+)", re.DOTALL),
        _not_running_instead,
    ),
    MarkerRule(
        "not-running",
        re.compile(r"([\w-]+) is not running(?! or)"),
        lambda m, _o: f"Cannot benchmark {m.group(1)} - not running in process manager",
    ),
    MarkerRule(
        "no-workers",
        re.compile(r"No PM2 processes|no workers running", re.IGNORECASE),
        _fixed("No worker processes running - start a framework first"),
    ),
    MarkerRule(
        "target-not-running",
        re.compile(r"target not running", re.IGNORECASE),
        _fixed("Target not running"),
    ),
    MarkerRule(
        "already-running",
        re.compile(r"([\w-]+) is already running"),
        lambda m, _o: f"{m.group(1)} is already running - stop it first or restart",
    ),
    MarkerRule(
        "invalid-node-count",
        re.compile(r"Invalid node count: (\d+)"),
        lambda m, _o: f"Invalid node count {m.group(1)} (minimum 3)",
    ),
    MarkerRule(
        "invalid-topology",
        re.compile(r"Invalid topology[^\n]*"),
        lambda m, _o: m.group(0).strip(),
    ),
    MarkerRule(
        "no-cluster",
        re.compile(r"No existing Redis cluster nodes found"),
        _fixed("No cluster nodes found - run setup first"),
    ),
    MarkerRule(
        "benchmark-cancelled",
        re.compile(r"Benchmark cancelled"),
        _fixed("Benchmark validation failed"),
    ),
)


def categorize(
    command: CommandString, rules: Sequence[CategoryRule] = DEFAULT_CATEGORY_RULES
) -> CommandCategory:
    for rule in rules:
        if rule.pattern.search(command):
            return rule.category
    return CommandCategory.OTHER


def match_rules(output: str, rules: Sequence[MarkerRule]) -> str | None:
    """Return the summary of the first rule that matches and accepts."""
    for rule in rules:
        match = rule.pattern.search(output)
        if match is None:
            continue
        summary = rule.summarize(match, output)
        if summary:
            return summary
    return None
