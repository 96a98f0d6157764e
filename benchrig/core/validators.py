"""Input checks for administrative actions, run before anything is spawned."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from benchrig.datastructures.type_aliases import (
    EndpointPath,
    FrameworkName,
    InstanceCount,
)

DEFAULT_MAX_INSTANCES = 100
DEFAULT_WARN_INSTANCES = 50
DEFAULT_MIN_CLUSTER_NODES = 3
MAX_REPLICAS = 3


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    message: str = ""
    needs_confirmation: bool = False
    replicas: int = 0


def validate_instances(
    count: InstanceCount,
    *,
    maximum: int = DEFAULT_MAX_INSTANCES,
    warn_above: int = DEFAULT_WARN_INSTANCES,
) -> ValidationResult:
    if count < 1:
        return ValidationResult(False, "Instance count must be at least 1")
    if count > maximum:
        return ValidationResult(False, f"Maximum {maximum} instances allowed")
    if count > warn_above:
        return ValidationResult(
            True,
            f"Warning: {count} instances is very high and may impact system stability",
            needs_confirmation=True,
        )
    return ValidationResult(True)


def validate_cluster_nodes(
    count: int, *, minimum: int = DEFAULT_MIN_CLUSTER_NODES
) -> ValidationResult:
    """Find the smallest replica count that splits ``count`` nodes evenly.

    ``count`` nodes form ``count / (1 + replicas)`` primaries, which must be
    a whole number of at least ``minimum``.
    """
    if count < minimum:
        return ValidationResult(
            False, f"Redis cluster requires at least {minimum} nodes"
        )
    for replicas in range(MAX_REPLICAS + 1):
        primaries, remainder = divmod(count, 1 + replicas)
        if remainder == 0 and primaries >= minimum:
            return ValidationResult(
                True,
                f"{primaries} primaries with {replicas} replica(s) each",
                replicas=replicas,
            )
    return ValidationResult(
        False,
        f"{count} nodes cannot form a valid cluster topology. Try 3, 6, 9, etc.",
    )


def validate_replicas(
    count: int, replicas: int, *, minimum: int = DEFAULT_MIN_CLUSTER_NODES
) -> ValidationResult:
    """Check an explicitly requested replica count against the node count."""
    if not 0 <= replicas <= MAX_REPLICAS:
        return ValidationResult(
            False, f"Replicas per primary must be between 0 and {MAX_REPLICAS}"
        )
    primaries, remainder = divmod(count, 1 + replicas)
    if remainder or primaries < minimum:
        return ValidationResult(
            False,
            f"Invalid topology: {count} nodes with {replicas} replica(s) each "
            f"needs a multiple of {1 + replicas} giving at least {minimum} primaries",
        )
    return ValidationResult(
        True,
        f"{primaries} primaries with {replicas} replica(s) each",
        replicas=replicas,
    )


def validate_framework(
    name: FrameworkName | None, known: Iterable[FrameworkName]
) -> ValidationResult:
    known = tuple(known)
    if not name or name.lower() not in known:
        return ValidationResult(
            False, f"Framework must be one of: {', '.join(known)}"
        )
    return ValidationResult(True)


def validate_endpoint(path: EndpointPath | None) -> ValidationResult:
    if not path or not path.startswith("/"):
        return ValidationResult(False, "Endpoint must start with /")
    return ValidationResult(True)
