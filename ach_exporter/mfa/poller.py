"""Bounded polling around the mailbox finder.

Each attempt rebuilds its :class:`SearchSpec` from the clock so the lookback
window slides with time, and runs the blocking IMAP work in a worker thread.
Only the time budget ends the loop; a failed attempt is logged and retried.
Every attempt, including the last one at the deadline, must finish within
half a poll interval past the deadline. One that does not is abandoned to its
thread and ``on_stall`` is called so later attempts do not share its
connection.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable

from ach_exporter.json_logger import JsonLogger, log_event
from ach_exporter.mfa.clock import Clock, SystemClock
from ach_exporter.mfa.models import CodeMatch, PollOutcome, SearchSpec

__all__ = ["CodeTimeoutError", "poll_for_code", "wait_for_code"]

Finder = Callable[[SearchSpec], "CodeMatch | None"]
SpecBuilder = Callable[[datetime], SearchSpec]
BlockingRunner = Callable[..., Awaitable[Any]]


class CodeTimeoutError(TimeoutError):
    """No code arrived within the polling budget."""

    kind = "code_timeout"

    def __init__(self, max_wait: float, attempts: int) -> None:
        super().__init__(f"2FA code not found within {max_wait:g}s after {attempts} attempt(s)")
        self.max_wait = max_wait
        self.attempts = attempts
        self.hint = "no matching email arrived; check IMAP filters and mailboxes"


async def poll_for_code(
    find: Finder,
    build_spec: SpecBuilder,
    *,
    max_wait: float,
    poll_interval: float,
    clock: Clock | None = None,
    logger: JsonLogger,
    run_blocking: BlockingRunner | None = None,
    on_stall: Callable[[], None] | None = None,
) -> PollOutcome:
    clock = clock or SystemClock()
    run_blocking = run_blocking or asyncio.to_thread
    started = clock.monotonic()
    deadline = started + max(0.0, max_wait)
    grace = max(0.0, poll_interval) / 2
    attempts = 0

    while True:
        attempts += 1
        spec = build_spec(clock.now())
        budget = max(0.0, deadline - clock.monotonic()) + grace
        try:
            match = await asyncio.wait_for(run_blocking(find, spec), timeout=budget)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            match = None
            log_event(
                logger=logger,
                phase="mfa",
                status="warn",
                message="Poll attempt outlived the budget; abandoning it",
                attempt=attempts,
                budget_s=round(budget, 3),
            )
            if on_stall is not None:
                on_stall()
        except Exception as exc:
            match = None
            log_event(
                logger=logger,
                phase="mfa",
                status="warn",
                message="Poll attempt failed",
                attempt=attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )

        elapsed = clock.monotonic() - started
        if match is not None:
            log_event(
                logger=logger,
                phase="mfa",
                status="ok",
                message="2FA code acquired",
                attempt=attempts,
                elapsed_s=round(elapsed, 3),
                **match.describe(),
            )
            return PollOutcome(match=match, attempts=attempts, elapsed_seconds=elapsed)

        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            log_event(
                logger=logger,
                phase="mfa",
                status="error",
                message="Timed out waiting for 2FA code",
                attempts=attempts,
                elapsed_s=round(elapsed, 3),
            )
            return PollOutcome(timed_out=True, attempts=attempts, elapsed_seconds=elapsed)

        await clock.sleep(min(poll_interval, remaining))


async def wait_for_code(
    find: Finder,
    build_spec: SpecBuilder,
    *,
    max_wait: float,
    poll_interval: float,
    clock: Clock | None = None,
    logger: JsonLogger,
    run_blocking: BlockingRunner | None = None,
    on_stall: Callable[[], None] | None = None,
) -> CodeMatch:
    outcome = await poll_for_code(
        find,
        build_spec,
        max_wait=max_wait,
        poll_interval=poll_interval,
        clock=clock,
        logger=logger,
        run_blocking=run_blocking,
        on_stall=on_stall,
    )
    if outcome.match is None:
        raise CodeTimeoutError(max_wait, outcome.attempts)
    return outcome.match
