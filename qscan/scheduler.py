"""
Bounded fan-out scheduler.

Drives any ScanOperation over an arbitrary number of WorkItems so that at
most `batch` attempts are outstanding at any instant. The limit is global
across the whole work set (all targets x all ports), not per target.
Every completion immediately frees a slot for the next pending item, so
no attempt is delayed while the budget allows starting it.
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

from .errors import ConfigurationError
from .models import ItemState, ProbeOutcome, ScanResult, WorkItem
from .probes.base import ScanOperation

logger = logging.getLogger(__name__)

ResultCallback = Callable[[ScanResult], None]


class Scheduler:
    """
    Owns the slot pool for one engine run. Reusable across phases
    (ping then TCP) but never shared between concurrent runs.

    Launch order is FIFO: retries first (so started items finish and free
    their memory), then fresh items pulled lazily from the iterable.
    """

    def __init__(self, batch: int):
        if batch < 1:
            raise ConfigurationError(f"batch must be >= 1 (got {batch})")
        self.batch = batch
        self.in_flight = 0
        self.peak_in_flight = 0
        self.launched = 0

    async def run(self, operation: ScanOperation, items: Iterable[WorkItem],
                  on_result: Optional[ResultCallback] = None) -> List[ScanResult]:
        pending = iter(items)
        retries: Deque[WorkItem] = deque()
        running: Dict[asyncio.Future, WorkItem] = {}
        waiting: Set[asyncio.Future] = set()
        done: asyncio.Queue = asyncio.Queue()
        results: List[ScanResult] = []
        exhausted = False

        def launch():
            nonlocal exhausted
            while len(running) < self.batch:
                if retries:
                    item = retries.popleft()
                elif not exhausted:
                    item = next(pending, None)
                    if item is None:
                        exhausted = True
                        break
                else:
                    break

                item.start()
                task = asyncio.ensure_future(operation.attempt(item))
                task.add_done_callback(done.put_nowait)
                running[task] = item
                self.launched += 1
            self.in_flight = len(running)
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

        logger.debug("%s phase started (batch=%d, tries=%d)", operation.name, self.batch, operation.tries)
        try:
            launch()
            while running or waiting:
                task = await done.get()

                if task in waiting:
                    # Retry pause elapsed; the item queues up for a slot again
                    waiting.discard(task)
                    retries.append(task.result())
                else:
                    item = running.pop(task)
                    self.in_flight = len(running)
                    state = item.record(self._outcome(task, item), operation.tries)
                    if state is ItemState.DONE:
                        result = operation.finalize(item)
                        results.append(result)
                        if on_result:
                            on_result(result)
                    else:
                        logger.debug("Retrying %r after %s", item, item.outcome.reason)
                        if operation.retry_delay > 0:
                            hold = asyncio.ensure_future(self._hold(item, operation.retry_delay))
                            hold.add_done_callback(done.put_nowait)
                            waiting.add(hold)
                        else:
                            retries.append(item)

                launch()
        finally:
            leftovers = list(running) + list(waiting)
            for task in leftovers:
                task.cancel()
            if leftovers:
                logger.debug("Dropping %d unfinished %s attempt(s)", len(leftovers), operation.name)
                await asyncio.gather(*leftovers, return_exceptions=True)
            self.in_flight = 0

        logger.debug("%s phase finished: %d result(s)", operation.name, len(results))
        return results

    @staticmethod
    async def _hold(item: WorkItem, delay: float) -> WorkItem:
        await asyncio.sleep(delay)
        return item

    @staticmethod
    def _outcome(task: asyncio.Future, item: WorkItem) -> ProbeOutcome:
        exc = task.exception()
        if exc is None:
            return task.result()
        # A probe that raises is still just a failed attempt
        logger.debug("Attempt on %r raised %r", item, exc)
        return ProbeOutcome.error(repr(exc))
