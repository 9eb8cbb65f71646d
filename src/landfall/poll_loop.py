"""Bounded, interval-based polling of a classifying status function.

The fetch callable is invoked once per tick and returns one of
:class:`Continue`, :class:`Blocked` or :class:`Done`. The loop never runs
work concurrently; it sleeps between ticks and returns the first terminal
classification, or a timeout once the wait budget is spent.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Generic, Literal, TypeVar, Union

from landfall.observability import log_event


LOGGER = logging.getLogger("landfall.poll_loop")

T = TypeVar("T")

PollStatus = Literal["done", "blocked", "timed_out", "cancelled"]


class TransientFetchError(RuntimeError):
    """Empty or malformed upstream response; the tick is treated as CONTINUE."""


@dataclass(frozen=True)
class Continue:
    pending: tuple[str, ...] = ()


@dataclass(frozen=True)
class Blocked:
    reason: str


@dataclass(frozen=True)
class Done(Generic[T]):
    result: T


Classification = Union[Continue, Blocked, Done[T]]


@dataclass(frozen=True)
class PollProgress:
    elapsed_seconds: float
    pending: tuple[str, ...]
    transient_error: str | None = None


@dataclass(frozen=True)
class PollResult(Generic[T]):
    status: PollStatus
    elapsed_seconds: float
    ticks: int
    result: T | None = None
    reason: str | None = None

    @property
    def is_done(self) -> bool:
        return self.status == "done"


def poll_until(
    fetch: Callable[[], Classification[T]],
    *,
    interval_seconds: float,
    max_wait_seconds: float,
    on_progress: Callable[[PollProgress], None] | None = None,
    stop_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "poll",
) -> PollResult[T]:
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be > 0")
    if max_wait_seconds < 0:
        raise ValueError("max_wait_seconds must be >= 0")

    started_at = clock()
    ticks = 0
    while True:
        ticks += 1
        transient_error: str | None = None
        try:
            outcome = fetch()
        except TransientFetchError as exc:
            # One failed fetch per tick counts as "still waiting"; the wait
            # budget bounds how long a persistent failure can hide.
            transient_error = str(exc)
            outcome = Continue()
            log_event(
                LOGGER,
                "poll_fetch_transient_error",
                label=label,
                tick=ticks,
                error=transient_error,
            )

        elapsed = clock() - started_at
        if isinstance(outcome, Done):
            return _finish(
                label,
                PollResult(
                    status="done", elapsed_seconds=elapsed, ticks=ticks, result=outcome.result
                ),
            )
        if isinstance(outcome, Blocked):
            return _finish(
                label,
                PollResult(
                    status="blocked", elapsed_seconds=elapsed, ticks=ticks, reason=outcome.reason
                ),
            )

        if on_progress is not None:
            on_progress(
                PollProgress(
                    elapsed_seconds=elapsed,
                    pending=outcome.pending,
                    transient_error=transient_error,
                )
            )
        if elapsed >= max_wait_seconds:
            return _finish(
                label,
                PollResult(
                    status="timed_out",
                    elapsed_seconds=elapsed,
                    ticks=ticks,
                    reason=f"timed out after {format_elapsed(elapsed)}",
                ),
            )

        if stop_event is not None:
            if stop_event.wait(interval_seconds):
                return _finish(
                    label,
                    PollResult(
                        status="cancelled",
                        elapsed_seconds=clock() - started_at,
                        ticks=ticks,
                        reason="cancelled",
                    ),
                )
        else:
            sleep(interval_seconds)


def _finish(label: str, result: PollResult[T]) -> PollResult[T]:
    log_event(
        LOGGER,
        "poll_finished",
        label=label,
        status=result.status,
        ticks=result.ticks,
        elapsed_seconds=round(result.elapsed_seconds, 1),
    )
    return result


def format_elapsed(seconds: float) -> str:
    whole = int(seconds)
    minutes, secs = divmod(whole, 60)
    if minutes == 0:
        return f"{secs}s"
    return f"{minutes}m {secs}s"