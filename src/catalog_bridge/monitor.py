"""
Background monitor task.

After a successful creation the catalog service sometimes drops the
monitored flag while it finishes importing the book. A detached task keeps
re-asserting it on a fixed schedule inside its own time budget, independent
of the request that triggered it.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from .config import MonitorConfig
from .errors import CatalogError
from .submission import SubmissionHandler

logger = logging.getLogger(__name__)


class Ticker:
    """Async iterator yielding tick numbers: one immediately, then every interval."""

    def __init__(
        self,
        interval: float,
        max_ticks: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.interval = interval
        self.max_ticks = max_ticks
        self._sleep = sleep

    def __aiter__(self) -> AsyncIterator[int]:
        return self._ticks()

    async def _ticks(self) -> AsyncIterator[int]:
        tick = 0
        while self.max_ticks is None or tick < self.max_ticks:
            if tick:
                await self._sleep(self.interval)
            tick += 1
            yield tick


class MonitorScheduler:
    """Owns the detached monitor tasks for one engine instance."""

    def __init__(self, config: MonitorConfig | None = None):
        self.config = config or MonitorConfig()
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def start(self, submitter: SubmissionHandler, book_id: int) -> asyncio.Task:
        """Spawn the monitor loop for a newly created book."""
        task = asyncio.get_running_loop().create_task(
            self._run(submitter, book_id), name=f"monitor-book-{book_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Started background monitor for book {book_id}")
        return task

    async def _run(self, submitter: SubmissionHandler, book_id: int) -> int:
        attempts = 0
        ticker = Ticker(self.config.interval_seconds, self.config.max_attempts)
        try:
            async with asyncio.timeout(self.config.budget_seconds):
                async for attempt in ticker:
                    attempts = attempt
                    await self._attempt(submitter, book_id, attempt)
        except TimeoutError:
            logger.debug(f"Monitor budget for book {book_id} exhausted")

        logger.debug(f"Background monitor for book {book_id} finished after {attempts} attempt(s)")
        return attempts

    async def _attempt(self, submitter: SubmissionHandler, book_id: int, attempt: int) -> None:
        timeout = self.config.attempt_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                await submitter.monitor_books([book_id], True, timeout=timeout)
        except TimeoutError:
            logger.warning(f"Monitor attempt {attempt} for book {book_id} timed out")
        except CatalogError as e:
            logger.warning(f"Monitor attempt {attempt} for book {book_id} failed: {e}")

    async def wait_idle(self) -> None:
        """Wait for every outstanding monitor task to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding monitor tasks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
