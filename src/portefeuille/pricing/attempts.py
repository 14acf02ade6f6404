"""Ordered fallible attempts: first success wins, failures are collected.

One combinator serves candidate-symbol iteration, provider fallback and
batch processing, so that swallow-and-continue lives in a single place.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from portefeuille.core.exceptions import PortefeuilleError

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K")

Attempt = tuple[str, Callable[[], Awaitable[T]]]


class AttemptsExhausted(PortefeuilleError):
    """Every attempt in an ordered list failed.

    Context keys:
        attempts: list[str] — "<label>: <reason>" in attempt order
    """

    def __init__(self, trail: list[str]):
        message = " | ".join(trail) if trail else "no attempts were made"
        super().__init__(message, context={"attempts": list(trail)})
        self.trail = list(trail)


async def first_success(attempts: Iterable[Attempt[T]]) -> tuple[str, T]:
    """Run attempts in order and return ``(label, value)`` of the first success.

    Only ``PortefeuilleError`` is caught; anything else is a bug and
    propagates. A nested ``AttemptsExhausted`` contributes its message as
    a single trail entry.

    Raises:
        AttemptsExhausted: If every attempt raised, or the list was empty.
    """
    trail: list[str] = []
    for label, run in attempts:
        try:
            return label, await run()
        except PortefeuilleError as exc:
            logger.debug("Attempt %s failed: %s", label, exc)
            trail.append(f"{label}: {exc}")
    raise AttemptsExhausted(trail)


@dataclass
class BatchOutcome(Generic[K, T]):
    """Per-item results of a batch run; failures never abort the batch."""

    results: list[tuple[K, T]] = field(default_factory=list)
    failures: list[tuple[K, str]] = field(default_factory=list)


async def run_batch(
    items: Iterable[K],
    operation: Callable[[K], Awaitable[T]],
) -> BatchOutcome[K, T]:
    """Apply ``operation`` to each item sequentially, isolating failures."""
    outcome: BatchOutcome[K, T] = BatchOutcome()
    for item in items:
        try:
            outcome.results.append((item, await operation(item)))
        except PortefeuilleError as exc:
            logger.warning("Batch item %s failed: %s", item, exc)
            outcome.failures.append((item, str(exc)))
    return outcome
