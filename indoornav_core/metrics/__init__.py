"""
Metrics Module: Diagnostics, counters, histograms.

- Counters: readings_in, fusion_ticks, reroutes, recovery_attempts, etc.
- Histograms: tick latency, lateration residuals, path search time
- Drop reason codes (no silent failures)

There is no process-wide collector. The owner of a pipeline creates one
and passes it to every component:

    from indoornav_core.metrics import MetricsCollector

    metrics = MetricsCollector()
    engine = PositionFusionEngine(registry, metrics=metrics)
    metrics.increment_drop('stale')
"""

from .counters import MetricsCollector, CounterSnapshot

__all__ = ['MetricsCollector', 'CounterSnapshot']
