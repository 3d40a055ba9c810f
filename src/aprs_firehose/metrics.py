"""Prometheus metrics for the firehose service."""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from .models import ConnectionState

logger = logging.getLogger(__name__)


class FirehoseMetrics:
    """
    Prometheus counters and gauges for one service instance.

    Metrics live on a private registry so several instances (tests, mostly)
    can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.lines_received = Counter(
            'aprs_firehose_lines_received_total',
            'Data lines received from APRS-IS',
            registry=self.registry
        )

        self.frames_decoded = Counter(
            'aprs_firehose_frames_decoded_total',
            'Lines successfully decoded into frames',
            registry=self.registry
        )

        self.decode_failures = Counter(
            'aprs_firehose_decode_failures_total',
            'Lines that failed to decode',
            ['reason'],
            registry=self.registry
        )

        self.duplicates = Counter(
            'aprs_firehose_duplicates_total',
            'Frames suppressed as duplicates',
            registry=self.registry
        )

        self.frames_persisted = Counter(
            'aprs_firehose_frames_persisted_total',
            'Frames written to the store',
            registry=self.registry
        )

        self.frames_dropped = Counter(
            'aprs_firehose_frames_dropped_total',
            'Frames dropped after exhausting storage retries',
            registry=self.registry
        )

        self.connection_attempts = Counter(
            'aprs_firehose_connection_attempts_total',
            'TCP connection attempts to APRS-IS',
            registry=self.registry
        )

        self.connection_state = Gauge(
            'aprs_firehose_connection_state',
            'Current connection state (1 for the active state)',
            ['state'],
            registry=self.registry
        )

        self.queue_size = Gauge(
            'aprs_firehose_queue_size',
            'Current queue size',
            ['queue'],
            registry=self.registry
        )

        self.batch_write_duration = Histogram(
            'aprs_firehose_batch_write_seconds',
            'Time spent writing one batch, retries included',
            registry=self.registry
        )

        self.set_connection_state(ConnectionState.DISCONNECTED)

    def set_connection_state(self, state: ConnectionState) -> None:
        for candidate in ConnectionState:
            self.connection_state.labels(state=candidate.value).set(1 if candidate == state else 0)

    def start_server(self, port: int) -> None:
        """Expose the registry over HTTP."""
        start_http_server(port, registry=self.registry)
        logger.info(f"Prometheus metrics server started on port {port}")
