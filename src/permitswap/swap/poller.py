"""Bounded status polling.

Polling is a timeout, not a cancellation: when the budget runs out the
poller stops waiting and reports Expired. The transaction or relay task is
not revoked and may still confirm, so callers must treat Expired as unknown
rather than as failure.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from permitswap.errors import OutOfRangeError
from permitswap.models import TaskHandle, TaskStatus

logger = logging.getLogger(__name__)

StatusFn = Callable[[TaskHandle], Awaitable[TaskStatus]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollBudget:
    """Attempt count and spacing for a polling run."""
    max_attempts: int = 12
    interval_ms: int = 5000

    def __post_init__(self):
        if self.max_attempts <= 0:
            raise OutOfRangeError(f"max_attempts must be positive: {self.max_attempts}")
        if self.interval_ms < 0:
            raise OutOfRangeError(f"interval_ms must not be negative: {self.interval_ms}")


class StatusPoller:
    """Queries a status function until a terminal status or budget exhaustion."""

    def __init__(self, status_fn: StatusFn, sleep: SleepFn = asyncio.sleep):
        self.status_fn = status_fn
        self._sleep = sleep

    async def snapshots(self, handle: TaskHandle, budget: PollBudget) -> AsyncIterator[TaskStatus]:
        """Yield status snapshots, at most `budget.max_attempts` of them.

        Stops after the first terminal status. Attempts are separated by
        `budget.interval_ms`; there is no sleep after the last attempt. Each
        call starts a fresh sequence.
        """
        for attempt in range(1, budget.max_attempts + 1):
            status = await self.status_fn(handle)
            logger.debug(f"Poll {attempt}/{budget.max_attempts} for {handle.id}: {status.kind.value}")
            yield status
            if status.is_terminal:
                return
            if attempt < budget.max_attempts:
                await self._sleep(budget.interval_ms / 1000)

    async def await_terminal(
        self,
        handle: TaskHandle,
        max_attempts: int,
        interval_ms: int,
    ) -> TaskStatus:
        """Wait for a terminal status.

        Returns:
            The terminal status, or Expired when attempts ran out
        """
        budget = PollBudget(max_attempts=max_attempts, interval_ms=interval_ms)
        last: Optional[TaskStatus] = None
        async for status in self.snapshots(handle, budget):
            last = status
            if status.is_terminal:
                logger.info(f"{handle.kind.value} {handle.id} reached {status.kind.value}")
                return status

        logger.warning(
            f"{handle.kind.value} {handle.id} still pending after {max_attempts} polls; "
            f"outcome unknown, check on-chain before retrying"
        )
        return TaskStatus.expired(last)
