"""
Best-effort side effects.

Downstream notifications (approve, mark-available, import scans, library
removals) run as detached tasks. Their failures are logged and never reach
the caller of the primary operation.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

from .logging_config import LogContext

logger = logging.getLogger(__name__)


class BestEffortRunner:
    """Spawn fire-and-forget coroutines and keep them alive until done."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, name: str, coro: Awaitable, **context) -> asyncio.Task:
        """
        Schedule ``coro`` without awaiting it.

        ``context`` fields are attached to the failure log record.
        """
        task = asyncio.create_task(self._run(name, coro, context), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coro: Awaitable, context: dict) -> None:
        try:
            await coro
            logger.debug(f"Best-effort task finished: {name}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            with LogContext(operation=name, error=str(e), **context):
                logger.warning(f"Best-effort task failed: {name}: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight tasks; used at shutdown and in tests."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} unfinished best-effort task(s)")
