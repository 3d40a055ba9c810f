"""Duplicate suppression for retransmitted APRS reports."""

import hashlib
import logging
from collections import OrderedDict
from typing import Any, Dict, NamedTuple

from ..models import Frame

logger = logging.getLogger(__name__)


class DedupResult(NamedTuple):
    """Outcome of a duplicate check. A duplicate is a filtered outcome, not an error."""
    is_duplicate: bool
    fingerprint: str


def compute_fingerprint(source: str, payload: str, received_at: float, time_bucket_seconds: float) -> str:
    """
    Derive the dedup key of a report.

    The payload is whitespace-normalized and the path is ignored, so copies
    of one packet relayed through different digipeaters share a fingerprint.
    """
    normalized = " ".join(payload.split())
    bucket = int(received_at // time_bucket_seconds) if time_bucket_seconds > 0 else 0
    key = f"{source.upper()}\x00{normalized}\x00{bucket}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


class DedupWindow:
    """
    Bounded recent-history cache of frame fingerprints.

    Features:
    - Time horizon measured from the accepted occurrence of a report
    - Expired entries evicted on every check, no background task
    - Hard cap on tracked fingerprints as a memory bound
    """

    def __init__(
        self,
        horizon_seconds: float = 30.0,
        time_bucket_seconds: float = 3600.0,
        max_entries: int = 100000
    ):
        if horizon_seconds <= 0:
            raise ValueError("horizon_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.horizon_seconds = horizon_seconds
        self.time_bucket_seconds = time_bucket_seconds
        self.max_entries = max_entries

        # fingerprint -> accepted timestamp, oldest first
        self._seen: "OrderedDict[str, float]" = OrderedDict()

        self.stats = {
            'total_checks': 0,
            'duplicates_found': 0,
            'unique_records': 0,
            'records_evicted': 0,
            'records_trimmed': 0
        }

        logger.info(
            f"DedupWindow initialized: horizon={horizon_seconds}s, "
            f"bucket={time_bucket_seconds}s, max_entries={max_entries}"
        )

    def fingerprint(self, frame: Frame) -> str:
        return compute_fingerprint(frame.source, frame.payload, frame.received_at, self.time_bucket_seconds)

    def check(self, frame: Frame) -> DedupResult:
        """
        Decide whether a frame repeats a report seen within the horizon.

        New fingerprints are recorded; duplicates leave the cache untouched.
        """
        self.stats['total_checks'] += 1
        now = frame.received_at
        fingerprint = self.fingerprint(frame)

        self._evict_expired(now)

        if fingerprint in self._seen:
            self.stats['duplicates_found'] += 1
            logger.debug(f"Duplicate suppressed: {frame.source} ({fingerprint[:12]})")
            return DedupResult(True, fingerprint)

        self._seen[fingerprint] = now
        self.stats['unique_records'] += 1

        if len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
            self.stats['records_trimmed'] += 1

        return DedupResult(False, fingerprint)

    def __len__(self) -> int:
        return len(self._seen)

    def _evict_expired(self, now: float) -> None:
        cutoff = now - self.horizon_seconds
        evicted = 0
        while self._seen:
            fingerprint, seen_at = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            del self._seen[fingerprint]
            evicted += 1
        self.stats['records_evicted'] += evicted

    def clear(self) -> None:
        """Forget every tracked fingerprint."""
        count = len(self._seen)
        self._seen.clear()
        logger.info(f"Cleared {count} deduplication records")

    def get_stats(self) -> Dict[str, Any]:
        duplicate_rate = 0.0
        if self.stats['total_checks'] > 0:
            duplicate_rate = self.stats['duplicates_found'] / self.stats['total_checks']

        return {
            **self.stats,
            'duplicate_rate': duplicate_rate,
            'tracked_records': len(self._seen),
            'horizon_seconds': self.horizon_seconds
        }

    def health_check(self) -> Dict[str, Any]:
        stats = self.get_stats()
        issues = []

        if stats['tracked_records'] >= self.max_entries:
            issues.append(f"Window at capacity: {stats['tracked_records']} records")

        return {
            'status': 'healthy' if not issues else 'degraded',
            'issues': issues,
            'stats': stats
        }
