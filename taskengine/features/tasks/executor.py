"""
Concurrency-limited executor.

Runs deferred units of work with at most N in flight. Each unit's
result or error is captured, so one failing unit never aborts its
siblings.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Unit = Callable[[], Awaitable[T]]

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 5
DEFAULT_CONCURRENCY = 3


@dataclass
class UnitResult(Generic[T]):
    """Result of one unit: value on success, error on failure."""

    index: int
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def clamp_concurrency(
    value: Any,
    default: int = DEFAULT_CONCURRENCY,
    upper: int = MAX_CONCURRENCY,
) -> int:
    """
    Normalize a caller-supplied concurrency into [1, upper].

    Missing, zero or non-numeric values fall back to default.
    """
    try:
        requested = int(value) if value else default
    except (TypeError, ValueError):
        requested = default
    return min(upper, max(MIN_CONCURRENCY, requested))


def with_jitter(unit: Unit[T], max_delay_ms: int, skip: bool = False) -> Unit[T]:
    """Wrap a unit so it starts after a uniform random 0..max_delay_ms delay."""

    async def delayed() -> T:
        if not skip and max_delay_ms > 0:
            await asyncio.sleep(random.uniform(0, max_delay_ms) / 1000)
        return await unit()

    return delayed


async def run_with_concurrency_limit(
    units: Iterable[Unit[T]],
    limit: int,
) -> list[UnitResult[T]]:
    """
    Run every unit with at most `limit` in flight.

    A slot is released as soon as a unit finishes and the next queued
    unit takes it. Results come back in submission order.

    Raises:
        ValueError: limit is below 1
    """
    if limit < MIN_CONCURRENCY:
        raise ValueError(f"Concurrency limit must be at least {MIN_CONCURRENCY}, got {limit}")

    semaphore = asyncio.Semaphore(limit)

    async def bounded(index: int, unit: Unit[T]) -> UnitResult[T]:
        async with semaphore:
            try:
                return UnitResult(index=index, value=await unit())
            except Exception as exc:
                logger.warning("unit_failed", index=index, error=str(exc))
                return UnitResult(index=index, error=exc)

    return list(await asyncio.gather(
        *[bounded(index, unit) for index, unit in enumerate(units)]
    ))
