"""
Statistics Aggregator
Summaries over a target's recent history, computed on demand.
"""

from datetime import timedelta
from typing import Sequence

from .history import HistoryStore
from .models import PingStatistics, Sample


def compute_statistics(samples: Sequence[Sample]) -> PingStatistics:
    """Min/max/mean over successful samples plus packet loss."""
    latencies = [s.latency_ms for s in samples if s.latency_ms is not None]
    total = len(samples)
    failed = total - len(latencies)

    if latencies:
        min_ms = min(latencies)
        max_ms = max(latencies)
        avg_ms = sum(latencies) / len(latencies)
    else:
        min_ms = max_ms = avg_ms = None

    return PingStatistics(
        min_ms=min_ms,
        max_ms=max_ms,
        avg_ms=avg_ms,
        packet_loss_pct=(100.0 * failed / total) if total else 0.0,
        total_pings=total,
        failed_pings=failed,
    )


class Statistics:
    """Read-only view over a HistoryStore."""

    def __init__(self, store: HistoryStore):
        self.store = store

    def statistics(self, target: str, lookback: timedelta) -> PingStatistics:
        return compute_statistics(self.store.window(target, lookback))

    def uptime_pct(self, target: str, lookback: timedelta) -> float:
        """Share of successful probes in the window (0 when empty)."""
        stats = self.statistics(target, lookback)
        if stats.total_pings == 0:
            return 0.0
        return 100.0 - stats.packet_loss_pct

    def outages(self, target: str, lookback: timedelta) -> int:
        """Number of success → failure transitions in the window."""
        count = 0
        was_online = True
        for sample in self.store.window(target, lookback):
            if not sample.is_success and was_online:
                count += 1
            was_online = sample.is_success
        return count
