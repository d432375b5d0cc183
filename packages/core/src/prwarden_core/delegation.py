"""Delegated sub-sessions with a hard iteration cap.

A helper task spawned by the agent gets a fresh IterationBudget. The task calls
budget.tick() for every tool call; when the cap is reached the budget's abort
event fires, the task is cancelled, and the caller receives a bounded failure
report instead of waiting on a runaway loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


def iteration_cap(max_files: int) -> int:
    return 10 + max_files * 5


@dataclass
class IterationBudget:
    max_iterations: int
    tool_calls: int = 0
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def tick(self) -> None:
        """Count one tool call; signal abort once the cap is reached."""
        self.tool_calls += 1
        if self.tool_calls >= self.max_iterations and not self.aborted:
            logger.warning("Delegated task hit the %d tool-call limit; aborting.", self.max_iterations)
            self.abort_event.set()


@dataclass(frozen=True)
class DelegatedReport:
    output: str
    tool_calls: int
    aborted: bool = False
    is_error: bool = False


async def run_delegated(
    task: Callable[[IterationBudget], Awaitable[list[str]]],
    max_iterations: int,
) -> DelegatedReport:
    """Run ``task`` under an iteration cap and report what it produced.

    ``task`` returns the assistant texts it produced; they are joined into the
    report output.
    """
    budget = IterationBudget(max_iterations=max_iterations)
    runner = asyncio.ensure_future(task(budget))
    abort_waiter = asyncio.ensure_future(budget.abort_event.wait())
    try:
        await asyncio.wait({runner, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        runner.cancel()
        raise
    finally:
        abort_waiter.cancel()

    if budget.aborted:
        if not runner.done():
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        elif not runner.cancelled() and runner.exception() is not None:
            logger.debug("Delegated task raised after abort: %s", runner.exception())
        return DelegatedReport(
            output="Delegated task aborted after exceeding tool call limit.",
            tool_calls=budget.tool_calls,
            aborted=True,
            is_error=True,
        )

    try:
        texts = runner.result()
    except Exception as e:
        logger.warning("Delegated task failed: %s", e)
        return DelegatedReport(output=f"Delegated task error: {e}", tool_calls=budget.tool_calls, is_error=True)

    output = "\n\n".join(t for t in texts if t.strip()).strip() or "(no output)"
    return DelegatedReport(output=output, tool_calls=budget.tool_calls)
