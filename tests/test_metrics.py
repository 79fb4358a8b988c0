"""
Unit tests for the pipeline metrics collector.

Tests cover:
- Counters seeded per pipeline stage
- Drop reasons, their stages and unknown-reason warnings
- Windowed histograms and numpy-backed statistics
- Snapshots, reset and uptime with an injected clock
- Stage-grouped summary text
- Concurrent recording
"""

import logging
import threading

import pytest

from indoornav_core.metrics import CounterSnapshot, MetricsCollector
from indoornav_core.metrics.counters import STAGE_COUNTERS, STAGES


class TestCounters:
    """Tests for counters and drop reasons."""

    def test_stage_counters_seeded(self):
        """Test that every stage's headline counters exist at zero."""
        snapshot = MetricsCollector().snapshot()

        for stage in STAGES:
            for name in STAGE_COUNTERS[stage]:
                assert snapshot.counters[name] == 0
        assert all(count == 0 for count in snapshot.drop_reasons.values())

    def test_increment(self, metrics):
        metrics.increment('reroutes')
        metrics.increment('reroutes', 4)

        assert metrics.get_counter('reroutes') == 5
        assert metrics.get_counter('never_used') == 0

    def test_drops_by_reason(self, metrics):
        """Test that drops accumulate per reason and in the total."""
        metrics.increment_drop('stale', 2)
        metrics.increment_drop('too_far')
        metrics.increment_drop('no_route')

        assert metrics.get_drop_count('stale') == 2
        assert metrics.total_dropped == 4
        assert metrics.snapshot().total_dropped() == 4

    def test_unknown_reason_warns_but_counts(self, metrics, caplog):
        with caplog.at_level(logging.WARNING, logger='indoornav_core.metrics.counters'):
            metrics.increment_drop('cosmic_ray')

        assert "Unknown drop reason 'cosmic_ray'" in caplog.text
        assert metrics.get_drop_count('cosmic_ray') == 1

    @pytest.mark.parametrize("reason,stage", [
        ('stale', 'positioning'),
        ('hold_exceeded', 'positioning'),
        ('no_route', 'navigation'),
        ('queue_full', 'navigation'),
        ('recovery_rejected', 'recovery'),
        ('cosmic_ray', None),
    ])
    def test_stage_of_drop(self, reason, stage):
        assert MetricsCollector.stage_of_drop(reason) == stage

    def test_collectors_are_independent(self):
        first, second = MetricsCollector(), MetricsCollector()
        first.increment('arrivals')
        assert second.get_counter('arrivals') == 0


class TestHistograms:
    """Tests for windowed histograms."""

    def test_stats(self, metrics):
        for value in (1.0, 2.0, 3.0, 4.0):
            metrics.record_histogram('path_search_ms', value)

        stats = metrics.get_histogram_stats('path_search_ms')

        assert stats['count'] == 4
        assert stats['min'] == 1.0
        assert stats['max'] == 4.0
        assert stats['mean'] == pytest.approx(2.5)
        assert stats['median'] == pytest.approx(2.5)

    def test_percentiles(self, metrics):
        """Test linear-interpolated percentiles over 0..100."""
        for i in range(101):
            metrics.record_histogram('fusion_tick_ms', float(i))

        stats = metrics.get_histogram_stats('fusion_tick_ms')

        assert stats['p95'] == pytest.approx(95.0)
        assert stats['p99'] == pytest.approx(99.0)

    def test_empty(self, metrics):
        assert metrics.get_histogram_stats('kalman_uncertainty_m') is None

    def test_window_keeps_newest(self, metrics):
        """Test that the window size is fixed on first use and drops the oldest."""
        for i in range(10):
            metrics.record_histogram('residual', float(i), max_samples=3)

        assert metrics.snapshot().histograms['residual'] == [7.0, 8.0, 9.0]


class TestSnapshotAndReset:
    """Tests for snapshots, uptime and reset with a manual clock."""

    def test_snapshot_is_a_copy(self, clock):
        metrics = MetricsCollector(clock=clock)
        metrics.increment('readings_in', 10)
        clock.advance(2.5)

        snapshot = metrics.snapshot()
        metrics.increment('readings_in')

        assert isinstance(snapshot, CounterSnapshot)
        assert snapshot.counters['readings_in'] == 10
        assert snapshot.timestamp == clock()
        assert snapshot.uptime_s == pytest.approx(2.5)

    def test_drop_rate(self, metrics):
        metrics.increment_drop('stale', 3)
        metrics.increment_drop('unknown_emitter', 1)

        snapshot = metrics.snapshot()

        assert snapshot.drop_rate(50) == pytest.approx(8.0)
        assert snapshot.drop_rate(0) == 0.0

    def test_drops_for_stage(self, metrics):
        metrics.increment_drop('stale')
        metrics.increment_drop('no_route', 2)

        snapshot = metrics.snapshot()

        assert snapshot.drops_for_stage('positioning') == {'stale': 1}
        assert snapshot.drops_for_stage('navigation') == {'no_route': 2}
        assert snapshot.drops_for_stage('recovery') == {}

    def test_reset(self, clock):
        """Test that reset zeroes state, re-seeds counters and restarts uptime."""
        metrics = MetricsCollector(clock=clock)
        metrics.increment('reroutes', 3)
        metrics.increment('custom_counter')
        metrics.increment_drop('stale')
        metrics.record_histogram('path_search_ms', 1.0)
        clock.advance(10.0)

        metrics.reset()

        snapshot = metrics.snapshot()
        assert snapshot.counters['reroutes'] == 0
        assert 'custom_counter' not in snapshot.counters
        assert snapshot.total_dropped() == 0
        assert snapshot.histograms == {}
        assert metrics.get_uptime() == 0.0


class TestSummary:
    """Tests for the text report."""

    def test_sections_in_pipeline_order(self, metrics):
        metrics.increment('reroutes', 2)
        metrics.increment_drop('stale', 4)
        metrics.increment('kalman_updates')
        metrics.record_histogram('fusion_tick_ms', 0.5)

        summary = metrics.format_summary()

        positions = [summary.index(f"[{stage}]") for stage in STAGES]
        assert positions == sorted(positions)
        assert "drop:stale" in summary
        assert "[other]" in summary
        assert "kalman_updates" in summary
        assert "[timing]" in summary

    def test_unknown_drop_listed_under_other(self, metrics):
        metrics.increment_drop('cosmic_ray')
        assert "drop:cosmic_ray" in metrics.format_summary()

    def test_print_summary(self, metrics, capsys):
        metrics.increment('arrivals')
        metrics.print_summary()
        assert "Pipeline metrics" in capsys.readouterr().out


class TestConcurrency:
    """Tests for recording from several threads."""

    def test_parallel_recording(self):
        """Test that counters, drops and histograms lose nothing under contention."""
        metrics = MetricsCollector()

        def worker():
            for _ in range(500):
                metrics.increment('readings_in')
                metrics.increment_drop('stale')
                metrics.record_histogram('fusion_tick_ms', 1.0)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.get_counter('readings_in') == 4000
        assert metrics.get_drop_count('stale') == 4000
        assert metrics.get_histogram_stats('fusion_tick_ms')['count'] == 4000
