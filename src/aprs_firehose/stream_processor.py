"""
Ingestion Pipeline
==================

Wires the APRS-IS connection, the decoder, the dedup window and the
persistence sink into one service with a single start/stop surface.

Data flow:
    ConnectionManager -> line queue -> decode + dedup -> PersistenceSink -> FrameStore

Both queues are bounded, so a slow store throttles reads from the socket
instead of growing memory.
"""

import asyncio
import collections
import dataclasses
import logging
import time
from typing import Any, Callable, Deque, Dict, List, Optional

from .clients.aprsis_client import ConnectionManager
from .config.settings import DecodeHealthConfig, FirehoseSettings
from .db_writer import FrameStore
from .decoder import FrameDecoder
from .exceptions import DecodeError, DecodeFailureReason, FirehoseError
from .models import Frame, RawLine
from .shutdown import ShutdownCoordinator, ShutdownRequested
from .sink import PersistenceSink
from .utils.deduplication import DedupWindow

logger = logging.getLogger(__name__)


class DecodeFailureMonitor:
    """Sliding-window decode failure counter with a rising-edge warning."""

    def __init__(self, config: DecodeHealthConfig, clock: Callable[[], float] = time.monotonic):
        self.threshold = config.failure_threshold
        self.window_seconds = config.window_seconds
        self._clock = clock
        self._failures: Deque[float] = collections.deque()
        self._alerting = False

    def record_failure(self) -> None:
        self._failures.append(self._clock())
        self._update()

    @property
    def recent_failures(self) -> int:
        self._expire(self._clock())
        return len(self._failures)

    @property
    def is_degraded(self) -> bool:
        self._update()
        return self._alerting

    def _expire(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _update(self) -> None:
        count = self.recent_failures
        if count >= self.threshold and not self._alerting:
            self._alerting = True
            logger.warning(
                f"High decode failure rate: {count} failures in the last {self.window_seconds:.0f}s"
            )
        elif count < self.threshold and self._alerting:
            self._alerting = False
            logger.info("Decode failure rate back to normal")


class IngestionPipeline:
    """
    Orchestrates connection, processing, persistence and stats reporting.

    ``run()`` returns once shutdown has completed; ``stop()`` requests it.
    """

    def __init__(
        self,
        settings: FirehoseSettings,
        store: FrameStore,
        shutdown: Optional[ShutdownCoordinator] = None,
        decoder: Optional[Callable[[RawLine], Frame]] = None,
        connection: Optional[ConnectionManager] = None,
        metrics=None
    ):
        self.settings = settings
        self.metrics = metrics
        self.shutdown = shutdown or ShutdownCoordinator(settings.pipeline.shutdown_grace_seconds)

        self.decoder = decoder or FrameDecoder()
        self.dedup = DedupWindow(
            horizon_seconds=settings.dedup.horizon_seconds,
            time_bucket_seconds=settings.dedup.time_bucket_seconds,
            max_entries=settings.dedup.max_entries
        )
        self.failure_monitor = DecodeFailureMonitor(settings.decode_health)
        self.connection = connection or ConnectionManager(
            settings.aprs_is,
            settings.reconnect,
            self.shutdown,
            metrics=metrics
        )
        self.sink = PersistenceSink(store, settings.storage, self.shutdown, metrics=metrics)
        self.line_queue: asyncio.Queue = asyncio.Queue(maxsize=settings.pipeline.line_queue_size)

        self._tasks: List[asyncio.Task] = []
        self._started_at: Optional[float] = None
        self._last_report = {'frames_decoded': 0, 'frames_persisted': 0}

        self.stats = {
            'lines_received': 0,
            'frames_decoded': 0,
            'decode_failures': {reason.value: 0 for reason in DecodeFailureReason},
            'duplicates': 0
        }

        logger.info("IngestionPipeline initialized")

    def process_line(self, line: RawLine) -> Optional[Frame]:
        """
        Decode and deduplicate one line.

        Returns:
            The fingerprinted frame to persist, or None if the line failed to
            decode or repeats a recent report
        """
        self.stats['lines_received'] += 1
        if self.metrics:
            self.metrics.lines_received.inc()

        try:
            frame = self.decoder(line)
        except DecodeError as e:
            self.stats['decode_failures'][e.reason.value] += 1
            self.failure_monitor.record_failure()
            if self.metrics:
                self.metrics.decode_failures.labels(reason=e.reason.value).inc()
            logger.debug(f"Decode failed ({e}): {line.text}")
            return None

        self.stats['frames_decoded'] += 1
        if self.metrics:
            self.metrics.frames_decoded.inc()

        result = self.dedup.check(frame)
        if result.is_duplicate:
            self.stats['duplicates'] += 1
            if self.metrics:
                self.metrics.duplicates.inc()
            return None

        return dataclasses.replace(frame, fingerprint=result.fingerprint)

    async def run(self) -> None:
        """
        Run until shutdown is requested or a component fails fatally.

        Raises:
            FirehoseError: the first fatal component error, after the
                shutdown sequence has completed
        """
        self._started_at = time.monotonic()
        logger.info("Starting ingestion pipeline")

        self._tasks = [
            asyncio.create_task(self.connection.run(self.line_queue), name="connection"),
            asyncio.create_task(self._process_lines(), name="processor"),
            asyncio.create_task(self.sink.run(), name="sink"),
            asyncio.create_task(self._report_stats(), name="stats")
        ]
        shutdown_waiter = asyncio.create_task(self.shutdown.wait(), name="shutdown-waiter")

        try:
            await asyncio.wait([shutdown_waiter, *self._tasks], return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not self.shutdown.is_shutting_down:
                failed = self._first_failure()
                self.shutdown.request_shutdown(f"{failed.get_name()} stopped" if failed else "pipeline stopped")
            shutdown_waiter.cancel()

            clean = await self.shutdown.drain(self._tasks, timeout=self.settings.pipeline.shutdown_grace_seconds)
            if not clean:
                logger.warning(f"Shutdown grace period expired; {self.sink.pending_count} frames not persisted")

        self._log_stats()

        failed = self._first_failure()
        if failed is not None:
            raise failed.exception()

        logger.info("Ingestion pipeline stopped")

    def stop(self, reason: str = "stop requested") -> None:
        self.shutdown.request_shutdown(reason)

    def _first_failure(self) -> Optional[asyncio.Task]:
        for task in self._tasks:
            if task.done() and not task.cancelled() and isinstance(task.exception(), FirehoseError):
                return task
        for task in self._tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                return task
        return None

    async def _process_lines(self) -> None:
        pending: Optional[Frame] = None
        try:
            while True:
                line = await self.shutdown.guard(self.line_queue.get)
                pending = self.process_line(line)
                if pending is not None:
                    await self.sink.put(pending)
                    pending = None
        except ShutdownRequested:
            # Hand everything already read to the sink before it flushes.
            if pending is not None:
                await self.sink.offer(pending)
            drained = 0
            while not self.line_queue.empty():
                frame = self.process_line(self.line_queue.get_nowait())
                drained += 1
                if frame is not None:
                    await self.sink.offer(frame)
            if drained:
                logger.info(f"Drained {drained} queued lines into the sink")

        # Skipped on cancellation: the sink queue may be full with no consumer left.
        await self.sink.close_input()

    async def _report_stats(self) -> None:
        interval = self.settings.pipeline.stats_interval_seconds
        try:
            while True:
                await self.shutdown.sleep(interval)
                self._log_stats()
        except ShutdownRequested:
            pass

    def _log_stats(self) -> None:
        decoded = self.stats['frames_decoded']
        persisted = self.sink.stats['frames_persisted']
        logger.info(
            f"Parsed: {decoded - self._last_report['frames_decoded']} | "
            f"Inserted: {persisted - self._last_report['frames_persisted']} | "
            f"Duplicates: {self.stats['duplicates']} | "
            f"Decode failures: {sum(self.stats['decode_failures'].values())}"
        )
        self._last_report = {'frames_decoded': decoded, 'frames_persisted': persisted}

        if self.metrics:
            self.metrics.queue_size.labels(queue='lines').set(self.line_queue.qsize())
            self.metrics.queue_size.labels(queue='sink').set(self.sink.queue.qsize())

    def get_stats(self) -> Dict[str, Any]:
        uptime = time.monotonic() - self._started_at if self._started_at else 0.0
        return {
            **self.stats,
            'decode_failures': dict(self.stats['decode_failures']),
            'frames_persisted': self.sink.stats['frames_persisted'],
            'frames_dropped': self.sink.stats['frames_dropped'],
            'line_queue_size': self.line_queue.qsize(),
            'uptime_seconds': uptime,
            'connection': self.connection.get_stats(),
            'dedup': self.dedup.get_stats(),
            'sink': self.sink.get_stats()
        }

    def health_check(self) -> Dict[str, Any]:
        """Aggregate component health into healthy/degraded/unhealthy."""
        components = {
            'connection': self.connection.health_check(),
            'dedup': self.dedup.health_check(),
            'sink': self.sink.health_check()
        }

        issues = []
        for name, component in components.items():
            issues.extend(f"{name}: {issue}" for issue in component.get('issues', []))

        if self.failure_monitor.is_degraded:
            issues.append(
                f"decoder: {self.failure_monitor.recent_failures} failures "
                f"in {self.failure_monitor.window_seconds:.0f}s"
            )

        statuses = [component['status'] for component in components.values()]
        if self.shutdown.is_shutting_down or 'unhealthy' in statuses:
            status = 'unhealthy'
        elif issues:
            status = 'degraded'
        else:
            status = 'healthy'

        return {
            'status': status,
            'issues': issues,
            'components': components
        }
