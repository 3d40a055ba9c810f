"""Tests for per-line processing and decode failure monitoring."""

import logging

import pytest

from aprs_firehose.config.settings import DecodeHealthConfig
from aprs_firehose.metrics import FirehoseMetrics
from aprs_firehose.stream_processor import DecodeFailureMonitor, IngestionPipeline

from tests.conftest import GARBAGE, VALID1, VALID2, FakeFrameStore, make_line


@pytest.mark.unit
class TestProcessLine:
    """Test IngestionPipeline.process_line."""

    @pytest.fixture
    def pipeline(self, test_settings):
        return IngestionPipeline(test_settings, FakeFrameStore())

    def test_valid_line_is_fingerprinted(self, pipeline):
        frame = pipeline.process_line(make_line(VALID1))

        assert frame is not None
        assert frame.source == "N0CALL"
        assert len(frame.fingerprint) == 40

    def test_duplicate_filtered(self, pipeline):
        assert pipeline.process_line(make_line(VALID1, received_at=1000.0)) is not None
        assert pipeline.process_line(make_line(VALID1, received_at=1005.0)) is None

        assert pipeline.stats['duplicates'] == 1

    def test_failures_counted_by_reason(self, pipeline):
        assert pipeline.process_line(make_line(GARBAGE)) is None

        assert pipeline.stats['decode_failures']['MalformedHeader'] == 1
        assert pipeline.stats['decode_failures']['UnsupportedPayload'] == 0

    def test_unrecognised_body_type_is_not_a_failure(self, pipeline):
        frame = pipeline.process_line(make_line("N0CALL>APRS,TCPIP*,qAC,T2TEST:<IGATE,MSG_CNT=0,LOC_CNT=0"))

        assert frame is not None
        assert pipeline.stats['frames_decoded'] == 1
        assert sum(pipeline.stats['decode_failures'].values()) == 0
        assert pipeline.failure_monitor.recent_failures == 0

    def test_valid_lines_interleaved_with_malformed(self, pipeline):
        valid = [f"N0CALL-{i}>APRS,TCPIP*:>status {i}" for i in range(1, 6)]
        malformed = [GARBAGE, "N0CALL>APRS:", "no separator here"]
        lines = []
        for i, text in enumerate(valid):
            lines.append(text)
            if i < len(malformed):
                lines.append(malformed[i])

        frames = [pipeline.process_line(make_line(text)) for text in lines]

        assert len([frame for frame in frames if frame is not None]) == len(valid)
        assert sum(pipeline.stats['decode_failures'].values()) == len(malformed)
        assert pipeline.stats['lines_received'] == len(lines)
        assert pipeline.stats['frames_decoded'] == len(valid)

    def test_metrics_updated(self, test_settings):
        metrics = FirehoseMetrics()
        pipeline = IngestionPipeline(test_settings, FakeFrameStore(), metrics=metrics)

        pipeline.process_line(make_line(VALID1))
        pipeline.process_line(make_line(VALID1))
        pipeline.process_line(make_line(GARBAGE))

        registry = metrics.registry
        assert registry.get_sample_value('aprs_firehose_lines_received_total') == 3
        assert registry.get_sample_value('aprs_firehose_duplicates_total') == 1
        assert registry.get_sample_value(
            'aprs_firehose_decode_failures_total', {'reason': 'MalformedHeader'}
        ) == 1

    def test_health_before_start_is_degraded(self, pipeline):
        health = pipeline.health_check()

        assert health['status'] == 'degraded'
        assert 'connection' in health['components']

    def test_get_stats_includes_components(self, pipeline):
        pipeline.process_line(make_line(VALID2))

        stats = pipeline.get_stats()

        assert stats['frames_decoded'] == 1
        assert stats['frames_persisted'] == 0
        assert stats['dedup']['unique_records'] == 1
        assert stats['connection']['state'] == 'disconnected'


@pytest.mark.unit
class TestDecodeFailureMonitor:

    def test_rising_edge_warning(self, caplog):
        now = [0.0]
        monitor = DecodeFailureMonitor(
            DecodeHealthConfig(failure_threshold=3, window_seconds=10.0),
            clock=lambda: now[0]
        )

        with caplog.at_level(logging.WARNING):
            for _ in range(5):
                monitor.record_failure()

        assert monitor.is_degraded
        warnings = [r for r in caplog.records if "High decode failure rate" in r.getMessage()]
        assert len(warnings) == 1

    def test_recovers_when_window_slides(self):
        now = [0.0]
        monitor = DecodeFailureMonitor(
            DecodeHealthConfig(failure_threshold=2, window_seconds=10.0),
            clock=lambda: now[0]
        )
        monitor.record_failure()
        monitor.record_failure()
        assert monitor.is_degraded

        now[0] = 20.0

        assert monitor.recent_failures == 0
        assert not monitor.is_degraded
