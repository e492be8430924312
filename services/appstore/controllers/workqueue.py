"""
In-process work queue and controller worker pool.

Keys are object names. The queue deduplicates keys that are already
waiting and never hands the same key to two workers at once: a key added
while it is being processed is parked and re-queued when the worker calls
done(). Failed keys come back with exponential backoff.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.orm.exc import StaleDataError

from appstore.logging_config import get_logger, reconcile_context

logger = get_logger(__name__)

DEFAULT_BASE_DELAY = 0.005
DEFAULT_MAX_DELAY = 300.0


@dataclass(frozen=True)
class Result:
    """Outcome of one reconcile pass.

    requeue asks for another pass right away, requeue_after (seconds) for
    one after a delay. Neither means the object has converged until it next
    changes or the periodic resync picks it up.
    """

    requeue: bool = False
    requeue_after: float = 0.0


class WorkQueue:
    """Deduplicating, per-key serialized queue of object names."""

    def __init__(
        self,
        name: str,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        self.name = name
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._ready: asyncio.Queue[str | None] = asyncio.Queue()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: dict[str, tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._ready.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """Add the key once delay seconds have passed. An earlier pending add wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        pending = self._timers.get(key)
        if pending is not None:
            if pending[0] <= when:
                return
            pending[1].cancel()
        self._timers[key] = (when, loop.call_at(when, self._fire, key))

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: str) -> float:
        """Re-add a failed key with exponential backoff. Returns the delay used."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the key's backoff."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str | None:
        """Wait for the next key. Returns None once the queue is shut down."""
        key = await self._ready.get()
        if key is None:
            # Wake the next waiting worker too
            self._ready.put_nowait(None)
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._ready.put_nowait(key)

    def shutdown(self) -> None:
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._ready.put_nowait(None)


class Controller:
    """Runs a reconcile function over a WorkQueue with a pool of workers.

    Every resync_period seconds all keys returned by list_keys are
    enqueued, which is what picks up objects changed behind the
    controller's back.
    """

    def __init__(
        self,
        name: str,
        reconcile: Callable[[str], Awaitable[Result]],
        list_keys: Callable[[], Awaitable[list[str]]],
        workers: int = 2,
        resync_period: float = 300.0,
        max_retry_backoff: float = DEFAULT_MAX_DELAY,
    ) -> None:
        self.name = name
        self.queue = WorkQueue(name, max_delay=max_retry_backoff)
        self._reconcile = reconcile
        self._list_keys = list_keys
        self._workers = workers
        self._resync_period = resync_period

    async def process_next(self) -> bool:
        """Reconcile one key. Returns False once the queue is shut down."""
        key = await self.queue.get()
        if key is None:
            return False

        try:
            with reconcile_context(self.name, key):
                result = await self._reconcile(key)
        except StaleDataError:
            logger.info("Object changed during reconcile, retrying", controller=self.name, key=key)
            self.queue.add_rate_limited(key)
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                "Reconcile failed",
                controller=self.name,
                key=key,
                retry_in=round(delay, 3),
                error=str(e),
                exc_info=e,
            )
        else:
            self.queue.forget(key)
            if result.requeue_after > 0:
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                self.queue.add(key)
        finally:
            self.queue.done(key)
        return True

    async def _worker(self, index: int) -> None:
        logger.debug("Worker started", controller=self.name, worker=index)
        while await self.process_next():
            pass
        logger.debug("Worker stopped", controller=self.name, worker=index)

    async def resync(self) -> int:
        """Enqueue every known key. Returns how many were enqueued."""
        keys = await self._list_keys()
        for key in keys:
            self.queue.add(key)
        return len(keys)

    async def _resync_loop(self) -> None:
        while not self.queue.shutting_down:
            try:
                count = await self.resync()
                logger.debug("Resync", controller=self.name, keys=count)
            except Exception as e:
                logger.error("Resync failed", controller=self.name, error=str(e), exc_info=e)

            try:
                await asyncio.sleep(self._resync_period)
            except asyncio.CancelledError:
                return

    async def run(self) -> None:
        """Run workers and the resync loop until shutdown() is called."""
        logger.info("Controller started", controller=self.name, workers=self._workers)
        resync_task = asyncio.create_task(self._resync_loop())
        try:
            await asyncio.gather(*(self._worker(i) for i in range(self._workers)))
        finally:
            resync_task.cancel()
            try:
                await resync_task
            except asyncio.CancelledError:
                pass
        logger.info("Controller stopped", controller=self.name)

    def shutdown(self) -> None:
        self.queue.shutdown()
