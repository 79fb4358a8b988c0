"""
Pipeline counters, drop reasons and latency histograms.

Counters and drop reasons are grouped by pipeline stage so the summary
reads in the order data flows:

    positioning -> navigation -> recovery

Every dropped reading or failed estimate is counted under a reason code,
so a silent failure always shows up in the summary. Histograms keep a
bounded window of recent samples (tick latency, lateration residuals,
path search time).
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

STAGES = ('positioning', 'navigation', 'recovery')

# Counters reported even before their first increment
STAGE_COUNTERS = {
    'positioning': ('readings_in', 'readings_accepted', 'fusion_ticks', 'position_estimates'),
    'navigation': ('path_searches', 'reroutes', 'arrivals'),
    'recovery': ('failed_cycles', 'recovery_attempts', 'manual_recoveries'),
}

DEFAULT_HISTOGRAM_WINDOW = 5000


@dataclass
class CounterSnapshot:
    """Copy of collector state at one instant."""

    timestamp: float
    uptime_s: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]] = field(default_factory=dict)

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())

    def drop_rate(self, total_items: int) -> float:
        """Dropped items as a percentage of total_items (0 when nothing came in)."""
        if total_items <= 0:
            return 0.0
        return 100.0 * self.total_dropped() / total_items

    def drops_for_stage(self, stage: str) -> Dict[str, int]:
        """Non-zero drop counts belonging to one pipeline stage."""
        return {
            reason: count for reason, count in self.drop_reasons.items()
            if count and MetricsCollector.stage_of_drop(reason) == stage
        }


class MetricsCollector:
    """
    Thread-safe metrics for one positioning pipeline.

    There is no module-level instance: whoever builds the pipeline creates
    a collector and injects it into each component, so tests and parallel
    buildings never share counters.

    Usage:
        metrics = MetricsCollector()
        engine = PositionFusionEngine(registry, metrics=metrics)

        metrics.increment('reroutes')
        metrics.increment_drop('stale')
        metrics.record_histogram('fusion_tick_ms', 0.8)

        print(metrics.format_summary())
    """

    # reason -> (stage, description)
    DROP_REASONS: Dict[str, Tuple[str, str]] = {
        'invalid_reading': ('positioning', 'Reading failed basic validity checks'),
        'stale': ('positioning', 'Reading older than max age'),
        'rssi_out_of_range': ('positioning', 'RSSI outside plausible band'),
        'too_far': ('positioning', 'Estimated distance beyond operational range'),
        'unknown_emitter': ('positioning', 'Emitter not in known-position registry'),
        'no_known_emitters': ('positioning', 'No reading matched a known emitter'),
        'degenerate_geometry': ('positioning', 'Near-singular lateration, centroid used'),
        'no_fingerprint_match': ('positioning', 'No fingerprint shares a signal with observation'),
        'no_measurements': ('positioning', 'Fusion tick had no usable measurement'),
        'hold_exceeded': ('positioning', 'Dead-reckoning-only hold time exceeded'),
        'no_route': ('navigation', 'Path search found no route'),
        'queue_full': ('navigation', 'Bounded event queue overflow'),
        'recovery_rejected': ('recovery', 'Recovery probe below confidence threshold'),
    }

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._drops: Dict[str, int] = {}
        self._histograms: Dict[str, Deque[float]] = {}
        self._started = clock()
        self._seed()

    @classmethod
    def stage_of_drop(cls, reason: str) -> Optional[str]:
        entry = cls.DROP_REASONS.get(reason)
        return entry[0] if entry else None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def increment(self, counter_name: str, value: int = 1):
        with self._lock:
            self._counters[counter_name] = self._counters.get(counter_name, 0) + value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count value dropped items under reason.

        Reasons outside DROP_REASONS are still counted, with a warning, so
        a typo never hides a drop.
        """
        if reason not in self.DROP_REASONS:
            logger.warning(f"Unknown drop reason '{reason}'")
        with self._lock:
            self._drops[reason] = self._drops.get(reason, 0) + value

    def record_histogram(self, histogram_name: str, value: float, max_samples: Optional[int] = None):
        """
        Append a sample; the oldest samples fall out of the window.

        Args:
            histogram_name: Histogram key
            value: Sample value
            max_samples: Window size, fixed when the histogram is first used
        """
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if samples is None:
                samples = deque(maxlen=max_samples or DEFAULT_HISTOGRAM_WINDOW)
                self._histograms[histogram_name] = samples
            samples.append(float(value))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        with self._lock:
            return self._drops.get(reason, 0)

    @property
    def total_dropped(self) -> int:
        with self._lock:
            return sum(self._drops.values())

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary statistics for one histogram.

        Returns:
            Dict with count, min, max, mean, median, p95, p99, or None if
            nothing was recorded
        """
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if not samples:
                return None
            values = np.fromiter(samples, dtype=float)

        p50, p95, p99 = np.percentile(values, [50, 95, 99])
        return {
            'count': int(values.size),
            'min': float(values.min()),
            'max': float(values.max()),
            'mean': float(values.mean()),
            'median': float(p50),
            'p95': float(p95),
            'p99': float(p99),
        }

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                timestamp=self._clock(),
                uptime_s=self._clock() - self._started,
                counters=dict(self._counters),
                drop_reasons=dict(self._drops),
                histograms={name: list(samples) for name, samples in self._histograms.items()},
            )

    def get_uptime(self) -> float:
        return self._clock() - self._started

    def reset(self):
        """Zero everything and restart the uptime clock."""
        with self._lock:
            self._counters.clear()
            self._drops.clear()
            self._histograms.clear()
            self._started = self._clock()
        self._seed()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def format_summary(self) -> str:
        """Stage-by-stage text report."""
        snapshot = self.snapshot()
        rule = "-" * 60
        lines = [rule, f"Pipeline metrics (uptime {snapshot.uptime_s:.1f}s)", rule]

        reported = set()
        for stage in STAGES:
            lines.append(f"[{stage}]")
            for name in STAGE_COUNTERS[stage]:
                lines.append(f"  {name:<28} {snapshot.counters.get(name, 0):>8d}")
                reported.add(name)
            for reason, count in sorted(snapshot.drops_for_stage(stage).items()):
                lines.append(f"  drop:{reason:<23} {count:>8d}")

        others = sorted(name for name in snapshot.counters if name not in reported)
        unstaged = {
            reason: count for reason, count in snapshot.drop_reasons.items()
            if count and reason not in self.DROP_REASONS
        }
        if others or unstaged:
            lines.append("[other]")
            for name in others:
                lines.append(f"  {name:<28} {snapshot.counters[name]:>8d}")
            for reason, count in sorted(unstaged.items()):
                lines.append(f"  drop:{reason:<23} {count:>8d}")

        if snapshot.histograms:
            lines.append("[timing]")
            for name in sorted(snapshot.histograms):
                stats = self.get_histogram_stats(name)
                if stats is None:
                    continue
                lines.append(
                    f"  {name:<28} n={stats['count']} mean={stats['mean']:.3f} "
                    f"p95={stats['p95']:.3f} max={stats['max']:.3f}"
                )

        lines.append(rule)
        return "\n".join(lines)

    def print_summary(self):
        print(self.format_summary())

    def _seed(self):
        with self._lock:
            for names in STAGE_COUNTERS.values():
                for name in names:
                    self._counters.setdefault(name, 0)
            for reason in self.DROP_REASONS:
                self._drops.setdefault(reason, 0)
