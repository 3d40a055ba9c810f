"""Batched, retried persistence of decoded frames."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List

from .config.settings import StorageConfig
from .db_writer import FrameStore
from .exceptions import StorageError
from .models import Frame
from .shutdown import ShutdownCoordinator, ShutdownRequested
from .utils.logging import log_with_context
from .utils.retry import exponential_backoff

logger = logging.getLogger(__name__)

# End-of-input marker placed on the queue by close_input().
_END = object()


class PersistenceSink:
    """
    Accepts frames through a bounded queue and writes them in batches.

    A batch is flushed when it reaches ``batch_size``, when its first frame
    has waited ``max_latency_seconds``, or at shutdown. Frames are written in
    the order they were queued.
    """

    def __init__(
        self,
        store: FrameStore,
        config: StorageConfig,
        shutdown: ShutdownCoordinator,
        clock: Callable[[], float] = time.monotonic,
        metrics=None
    ):
        self.store = store
        self.config = config
        self.shutdown = shutdown
        self.metrics = metrics
        self._clock = clock

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self._queued_frames = 0
        self._batch: List[Frame] = []
        self._in_flight: List[Frame] = []
        self._deadline = 0.0

        self.stats = {
            'frames_received': 0,
            'frames_persisted': 0,
            'frames_dropped': 0,
            'batches_written': 0,
            'batches_dropped': 0,
            'last_flush_time': None,
            'last_error': None
        }

        logger.info(
            f"PersistenceSink initialized: batch_size={config.batch_size}, "
            f"max_latency={config.max_latency_seconds}s, retry_attempts={config.retry_attempts}"
        )

    async def put(self, frame: Frame) -> None:
        """Queue a frame, waiting for space. Interrupted by shutdown."""
        await self.shutdown.guard(lambda: self.queue.put(frame))
        self._queued_frames += 1

    async def offer(self, frame: Frame) -> None:
        """Queue a frame while draining at shutdown; not interrupted by the token."""
        await self.queue.put(frame)
        self._queued_frames += 1

    async def close_input(self) -> None:
        """Signal that no more frames will be queued."""
        await self.queue.put(_END)

    @property
    def pending_count(self) -> int:
        """Frames accepted but not yet written or dropped."""
        return self._queued_frames + len(self._batch) + len(self._in_flight)

    async def run(self) -> None:
        """
        Consume the queue until end of input.

        Raises:
            StorageError: on a write failure when ``retry_attempts`` is 0
        """
        try:
            try:
                await self._consume()
            except ShutdownRequested:
                logger.info(f"Sink draining {self.pending_count} pending frames")
                await self._drain()
        except asyncio.CancelledError:
            if self.pending_count:
                logger.error(f"Sink cancelled with {self.pending_count} unflushed frames")
            raise

        logger.info(f"Sink stopped: {self.stats['frames_persisted']} frames persisted")

    async def _consume(self) -> None:
        while True:
            if self._batch:
                timeout = max(self._deadline - self._clock(), 0.0)
                try:
                    item = await self.shutdown.guard(lambda: asyncio.wait_for(self.queue.get(), timeout=timeout))
                except asyncio.TimeoutError:
                    await self._flush()
                    continue
            else:
                item = await self.shutdown.guard(self.queue.get)

            if item is _END:
                await self._flush()
                return

            self._add(item)
            if len(self._batch) >= self.config.batch_size:
                await self._flush()

    async def _drain(self) -> None:
        # Everything up to the end marker is flushed, in batch_size chunks.
        while True:
            item = await self.queue.get()
            if item is _END:
                break
            self._add(item)
            if len(self._batch) >= self.config.batch_size:
                await self._flush()
        await self._flush()

    def _add(self, frame: Frame) -> None:
        self._queued_frames -= 1
        if not self._batch:
            self._deadline = self._clock() + self.config.max_latency_seconds
        self._batch.append(frame)
        self.stats['frames_received'] += 1

    async def _flush(self) -> None:
        if not self._batch:
            return

        self._in_flight, self._batch = self._batch, []
        await self._write(self._in_flight)
        self._in_flight = []

    async def _write(self, batch: List[Frame]) -> None:
        async def write():
            return await self.store.write_batch(batch)

        started = time.perf_counter()
        try:
            if self.config.retry_attempts == 0:
                await write()
            else:
                await exponential_backoff(
                    write,
                    max_attempts=self.config.retry_attempts + 1,
                    initial_delay=self.config.retry_initial_backoff_seconds,
                    max_delay=self.config.retry_max_backoff_seconds,
                    exceptions=(StorageError,)
                )
        except StorageError as e:
            self.stats['last_error'] = str(e)
            if self.config.retry_attempts == 0:
                logger.error(f"Storage write failed with no retry budget: {e}")
                raise
            self._drop(batch, e)
            return
        finally:
            if self.metrics:
                self.metrics.batch_write_duration.observe(time.perf_counter() - started)

        self.stats['frames_persisted'] += len(batch)
        self.stats['batches_written'] += 1
        self.stats['last_flush_time'] = time.time()
        if self.metrics:
            self.metrics.frames_persisted.inc(len(batch))

        logger.debug(f"Flushed batch of {len(batch)} frames")

    def _drop(self, batch: List[Frame], error: StorageError) -> None:
        self.stats['frames_dropped'] += len(batch)
        self.stats['batches_dropped'] += 1
        if self.metrics:
            self.metrics.frames_dropped.inc(len(batch))

        logger.error(
            f"Dropping batch of {len(batch)} frames after "
            f"{self.config.retry_attempts + 1} attempts: {error}"
        )
        for frame in batch:
            log_with_context(
                logger, logging.WARNING, f"Dropped frame: {frame.raw}",
                frame_id=frame.frame_id, source=frame.source
            )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'queue_size': self.queue.qsize(),
            'queue_capacity': self.config.queue_size,
            'pending': self.pending_count
        }

    def health_check(self) -> Dict[str, Any]:
        stats = self.get_stats()
        issues = []

        if stats['queue_size'] >= self.config.queue_size * 0.8:
            issues.append(f"Sink queue nearly full: {stats['queue_size']}/{self.config.queue_size}")

        if stats['frames_dropped'] > 0:
            issues.append(f"{stats['frames_dropped']} frames dropped after storage failures")

        return {
            'status': 'healthy' if not issues else 'degraded',
            'issues': issues,
            'stats': stats
        }
