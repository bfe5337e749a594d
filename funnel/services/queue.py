"""
DBA Funnel: async scan queue.

FIFO queue with a small pool of workers. A scan id is held at most once
across the waiting line and the workers, so repeated polling or a restart
sweep cannot run the same scan twice at the same time.
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Awaitable, Optional

from funnel.config import settings

logger = logging.getLogger(__name__)


class ScanQueue:
    """Async FIFO scan queue with de-duplication and bounded concurrency."""

    def __init__(self, max_concurrent: int = 2):
        self._queue: deque[str] = deque()
        self._max_concurrent = max(1, max_concurrent)
        self._workers: set[asyncio.Task] = set()
        self._active: set[str] = set()      # queued or running
        self._process_fn: Optional[Callable[[str], Awaitable[None]]] = None
        self._processed: deque[str] = deque(maxlen=500)

    def set_processor(self, fn: Callable[[str], Awaitable[None]]) -> None:
        """Set the async function to process each scan.

        Signature: ``async fn(scan_id: str) -> None``
        """
        self._process_fn = fn

    async def enqueue(self, scan_id: str) -> bool:
        """Add a scan to the queue. Returns False if it is already queued or running."""
        if scan_id in self._active:
            logger.debug("Scan %s already in queue, skipping", scan_id)
            return False

        self._active.add(scan_id)
        self._queue.append(scan_id)
        logger.info("Scan %s queued (position %d)", scan_id, len(self._queue))

        if len(self._workers) < self._max_concurrent:
            task = asyncio.create_task(self._worker())
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)
        return True

    async def _worker(self) -> None:
        """Pull scans until the line is empty."""
        try:
            while self._queue:
                scan_id = self._queue.popleft()
                try:
                    if self._process_fn:
                        await self._process_fn(scan_id)
                except Exception as e:
                    logger.error("Scan %s failed in queue: %s", scan_id, e)
                finally:
                    self._active.discard(scan_id)
                    self._processed.append(scan_id)
        finally:
            # Out of the pool before control returns to the loop
            self._workers.discard(asyncio.current_task())

    def contains(self, scan_id: str) -> bool:
        return scan_id in self._active

    @property
    def pending(self) -> int:
        """Number of scans waiting in queue."""
        return len(self._queue)

    @property
    def processed(self) -> list[str]:
        """Scan ids that have left the queue, in completion order."""
        return list(self._processed)

    async def drain(self) -> None:
        """Wait for all queued scans to finish."""
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)


scan_queue = ScanQueue(max_concurrent=settings.scan_max_concurrent)
