"""
Exclusive Execution Queue

Serializes every engine search and move-cache read/write issued by the variant
builder. The engine session is single-threaded and cache read-then-write pairs
must not interleave with each other, so work is drained by a single consumer
strictly in submission order.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ExclusiveQueue:
    """
    Single-consumer queue of zero-argument tasks.
    A task that fails only fails its own caller; later tasks still run.
    """

    def __init__(self, name: str = "engine"):
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue()
        self.processing = False
        self._worker: Optional[asyncio.Task] = None
        self.metrics = {
            'total_requests': 0,
            'failed_requests': 0,
            'total_wait_time': 0.0,
            'max_queue_depth': 0
        }

    def ensure_started(self) -> None:
        """Start the background consumer if it is not already running."""
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.get_running_loop().create_task(self.start_processing())

    async def start_processing(self):
        """
        Process queued requests one at a time.
        Runs continuously in background task.
        """
        self.processing = True
        logger.debug(f"[ENGINE_QUEUE] {self.name} processor started")

        while self.processing:
            try:
                # Poll with a timeout so stop() is noticed without a sentinel
                try:
                    request = await asyncio.wait_for(self.queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue

                self.metrics['total_requests'] += 1
                self.metrics['total_wait_time'] += time.time() - request['enqueue_time']

                future: asyncio.Future = request['future']
                try:
                    # Caller gave up (timeout or cancellation) before its turn came
                    if future.done():
                        continue
                    result = request['fn']()
                    if inspect.isawaitable(result):
                        result = await result
                    if not future.done():
                        future.set_result(result)
                except asyncio.CancelledError:
                    if not future.done():
                        future.cancel()
                    raise
                except Exception as e:
                    self.metrics['failed_requests'] += 1
                    if not future.done():
                        future.set_exception(e)
                    logger.warning(f"[ENGINE_QUEUE] {self.name} request failed: {e}")
                finally:
                    self.queue.task_done()

            except asyncio.CancelledError:
                logger.debug(f"[ENGINE_QUEUE] {self.name} processor cancelled")
                self.processing = False
                await self.cancel_all_pending()
                break

    async def run(self, task: Callable[[], Any], timeout: Optional[float] = None) -> Any:
        """
        Submit a unit of work and wait for its result.

        Args:
            task: Zero-argument callable; may return a value or an awaitable
            timeout: Optional max seconds to wait, queueing time included

        Returns:
            Whatever the task returned

        Raises:
            Whatever the task raised, or asyncio.TimeoutError
        """
        self.ensure_started()

        future = asyncio.get_running_loop().create_future()
        current_depth = self.queue.qsize()
        if current_depth > self.metrics['max_queue_depth']:
            self.metrics['max_queue_depth'] = current_depth

        await self.queue.put({
            'fn': task,
            'future': future,
            'enqueue_time': time.time()
        })

        if timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[ENGINE_QUEUE] {self.name} request timed out after {timeout}s")
            raise

    def get_metrics(self) -> Dict[str, Any]:
        avg_wait = 0.0
        if self.metrics['total_requests'] > 0:
            avg_wait = self.metrics['total_wait_time'] / self.metrics['total_requests']

        return {
            'total_requests': self.metrics['total_requests'],
            'failed_requests': self.metrics['failed_requests'],
            'avg_wait_time_ms': round(avg_wait * 1000, 2),
            'max_queue_depth': self.metrics['max_queue_depth'],
            'current_queue_size': self.queue.qsize(),
            'processing': self.processing
        }

    def stop(self):
        """Stop processing the queue."""
        self.processing = False

    async def cancel_all_pending(self) -> int:
        """Cancel all pending requests in the queue."""
        cancelled_count = 0
        while not self.queue.empty():
            try:
                request = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not request['future'].done():
                request['future'].cancel()
                cancelled_count += 1
            self.queue.task_done()
        if cancelled_count > 0:
            logger.info(f"[ENGINE_QUEUE] Cancelled {cancelled_count} pending {self.name} requests")
        return cancelled_count

    async def aclose(self):
        """Stop the consumer, cancel whatever is still queued and wait for it to exit."""
        self.stop()
        await self.cancel_all_pending()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            try:
                await worker
            except asyncio.CancelledError:
                pass
