"""
Inbound Event Dispatcher

One task per inbound event, executed by a fixed set of asyncio workers.
Events are sharded by a stable hash of the sender identity, so each sender's
events are handled in arrival order while different senders run concurrently.
"""

import asyncio
import logging
import zlib
from typing import Awaitable, Callable, List, Optional

from .channel import InboundEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[InboundEvent], Awaitable[object]]


class EventDispatcher:
    """Sharded worker pool in front of the session manager."""

    def __init__(self, handler: EventHandler, worker_count: int = 4, queue_size: int = 0):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.handler = handler
        self.worker_count = worker_count
        self.queue_size = queue_size
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []
        self.stats = {'submitted': 0, 'processed': 0, 'failed': 0}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def shard_for(self, identity: str) -> int:
        return zlib.crc32(identity.encode('utf-8')) % self.worker_count

    async def start(self):
        if self.running:
            return
        self._queues = [asyncio.Queue(self.queue_size) for _ in range(self.worker_count)]
        self._workers = [asyncio.create_task(self._worker(index), name=f"intake-worker-{index}")
                         for index in range(self.worker_count)]
        logger.info(f"🚀 Started {self.worker_count} intake worker(s)")

    async def submit(self, event: InboundEvent):
        if not self.running:
            raise RuntimeError("Dispatcher is not running")
        await self._queues[self.shard_for(event.sender_identity)].put(event)
        self.stats['submitted'] += 1

    async def join(self):
        """Wait until every submitted event has been handled."""
        await asyncio.gather(*(queue.join() for queue in self._queues))

    async def stop(self, drain: bool = True, timeout: Optional[float] = 30.0):
        if not self.running:
            return
        if drain:
            try:
                await asyncio.wait_for(self.join(), timeout)
            except asyncio.TimeoutError:
                logger.warning("⚠️ Timed out draining intake queues")
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"🛑 Intake workers stopped: {self.stats}")

    async def _worker(self, index: int):
        queue = self._queues[index]
        while True:
            event = await queue.get()
            try:
                await self.handler(event)
                self.stats['processed'] += 1
            except Exception as e:
                self.stats['failed'] += 1
                logger.exception(f"❌ Worker {index} failed on event from {event.sender_identity}: {e}")
            finally:
                queue.task_done()
