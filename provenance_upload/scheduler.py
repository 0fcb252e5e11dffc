"""
Module for admitting prepared uploads under a concurrency bound.
"""
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Set

logger = logging.getLogger(__name__)

AuthProbe = Callable[[], Awaitable[None]]


class UploadScheduler:
    """FIFO admission queue with at most ``max_active`` transfers running.

    The queue and counters are only changed here, in response to
    ``enqueue``, ``discard`` and transfers finishing. Everything runs on one
    event loop, so no locking is needed.
    """

    def __init__(self, max_active: int = 1, auth_probe: Optional[AuthProbe] = None):
        """Initialize the scheduler.

        Args:
            max_active: Maximum number of entities uploading at once
            auth_probe: Coroutine function run once before the first admission.
                A failure is logged and the probe runs again on the next admission.
        """
        if max_active < 1:
            raise ValueError("max_active must be at least 1")
        self.max_active = max_active
        self.auth_probe = auth_probe
        self.active_count = 0
        self.auth_probed = False
        self._queue: Deque = deque()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    def enqueue(self, entity) -> None:
        """Add an entity to the tail of the queue and admit what fits."""
        self._queue.append(entity)
        logger.debug(f"Queued {entity.display_name} ({len(self._queue)} waiting)")
        self._admit_next()

    def discard(self, entity) -> bool:
        """Withdraw a queued entity that has not been admitted yet.

        Returns:
            True if the entity was waiting in the queue
        """
        try:
            self._queue.remove(entity)
        except ValueError:
            return False
        return True

    def _admit_next(self) -> None:
        while self.active_count < self.max_active and self._queue:
            entity = self._queue.popleft()
            self.active_count += 1
            task = asyncio.ensure_future(self._run(entity))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _check_auth(self) -> None:
        self.auth_probed = True
        try:
            await self.auth_probe()
        except Exception as e:
            logger.warning(f"Authentication check failed, will retry on next upload: {e}")
            self.auth_probed = False

    async def _run(self, entity) -> None:
        try:
            if self.auth_probe is not None and not self.auth_probed:
                await self._check_auth()
            logger.info(f"Starting upload of {entity.display_name}")
            await entity.run_transfer()
        finally:
            self.active_count -= 1
            self._admit_next()

    async def join(self) -> None:
        """Wait until the queue is empty and no transfer is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
