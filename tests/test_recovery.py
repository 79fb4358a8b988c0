"""
Unit tests for signal-loss recovery.

Tests cover:
- Tracker state machine (INACTIVE/INITIALIZING/ACTIVE/RECOVERING)
- Automatic attempts: acceptance threshold, backoff events, exhaustion
- Manual position override from any state
- Fallback source confidence decay
- Background worker and cancellation
"""

import threading
from typing import List, Optional

import pytest

from indoornav_core.proto.position import Position, PositionSource
from indoornav_core.proto.position_estimate import FixType, PositionEstimate
from indoornav_core.proto.recovery_events import (
    Landmark,
    ManualRecoveryRequiredEvent,
    PositionLostEvent,
    PositionRecoveredEvent,
    RecoveryProgressEvent,
)
from indoornav_core.localization.dead_reckoning import DeadReckoningIntegrator
from indoornav_core.recovery.fallback import FallbackConfig, FallbackPositionSource
from indoornav_core.recovery.tracker import (
    PositionTracker,
    RecoveryConfig,
    RecoveryPhase,
    TrackerState,
    landmarks_within,
)


def _estimate(x: float, y: float, confidence: float = 0.8, floor: int = 0) -> PositionEstimate:
    return PositionEstimate(Position(x, y, floor), 3.0, confidence, FixType.FIX, 0.0)


class ScriptedLocator:
    """Position source that returns queued results, then None."""

    def __init__(self, results: Optional[List[Optional[PositionEstimate]]] = None):
        self.results = list(results or [])
        self.calls = 0

    def __call__(self) -> Optional[PositionEstimate]:
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return None


@pytest.fixture
def manual_config() -> RecoveryConfig:
    """Caller-driven attempts (no worker thread)."""
    return RecoveryConfig(background_attempts=False)


def _tracker(locator, config, metrics=None, **kwargs) -> PositionTracker:
    tracker = PositionTracker(locator, config=config, metrics=metrics, clock=lambda: 500.0, **kwargs)
    tracker.start()
    return tracker


class TestStateMachine:
    """Tests for tracker state transitions."""

    def test_inactive_ignores_cycles(self, manual_config):
        tracker = PositionTracker(ScriptedLocator(), config=manual_config)
        assert tracker.process_cycle(_estimate(1.0, 1.0)) is None
        assert tracker.state == TrackerState.INACTIVE

    def test_first_cycle_activates(self, manual_config):
        """Test INITIALIZING -> ACTIVE on the first cycle."""
        tracker = _tracker(ScriptedLocator(), manual_config)
        assert tracker.state == TrackerState.INITIALIZING

        estimate = _estimate(1.0, 2.0)
        assert tracker.process_cycle(estimate) is estimate
        assert tracker.state == TrackerState.ACTIVE
        assert tracker.last_known_position == Position(1.0, 2.0)

    def test_failures_enter_recovery(self, manual_config, metrics):
        """Test that five failed cycles leave the tracker RECOVERING."""
        tracker = _tracker(ScriptedLocator(), manual_config, metrics)
        tracker.process_cycle(_estimate(5.0, 5.0))

        for _ in range(5):
            tracker.process_cycle(None)

        assert tracker.state == TrackerState.RECOVERING
        assert tracker.phase == RecoveryPhase.AUTOMATIC
        assert metrics.get_counter('failed_cycles') == 5

        lost = tracker.events.get(timeout=0)
        assert isinstance(lost, PositionLostEvent)
        assert lost.last_known_position == Position(5.0, 5.0)
        # Only one loss event while already recovering
        assert tracker.events.get(timeout=0) is None

    def test_failure_threshold(self):
        """Test that recovery waits for the configured consecutive failures."""
        config = RecoveryConfig(background_attempts=False, failures_before_recovery=3)
        tracker = _tracker(ScriptedLocator(), config)
        tracker.process_cycle(_estimate(0.0, 0.0))

        tracker.process_cycle(None)
        tracker.process_cycle(None)
        assert tracker.state == TrackerState.ACTIVE
        assert tracker.consecutive_failures == 2

        tracker.process_cycle(_estimate(0.0, 1.0))
        assert tracker.consecutive_failures == 0

        for _ in range(3):
            tracker.process_cycle(None)
        assert tracker.state == TrackerState.RECOVERING

    def test_manual_fix_restores_active(self, manual_config, metrics):
        """Test that a user-confirmed position ends recovery and resets the pipeline."""
        overrides = []
        tracker = _tracker(ScriptedLocator(), manual_config, metrics, on_position_override=overrides.append)
        tracker.process_cycle(_estimate(5.0, 5.0))
        for _ in range(5):
            tracker.process_cycle(None)

        confirmed = Position(7.0, 8.0, 1)
        tracker.set_manual_position(confirmed)

        assert tracker.state == TrackerState.ACTIVE
        assert tracker.phase == RecoveryPhase.NONE
        assert overrides == [confirmed]
        assert tracker.last_known_position == confirmed
        assert metrics.get_counter('manual_recoveries') == 1

        events = tracker.events.drain()
        recovered = events[-1]
        assert isinstance(recovered, PositionRecoveredEvent)
        assert recovered.manual
        assert recovered.position == confirmed

    def test_manual_fix_from_initializing(self, manual_config):
        """Test that a manual position is accepted before the first cycle."""
        tracker = _tracker(ScriptedLocator(), manual_config)
        tracker.set_manual_position(Position(1.0, 1.0))
        assert tracker.state == TrackerState.ACTIVE

    def test_estimate_while_recovering_resumes(self, manual_config, metrics):
        """Test that a pipeline fix during recovery resumes tracking without override."""
        overrides = []
        tracker = _tracker(ScriptedLocator(), manual_config, metrics, on_position_override=overrides.append)
        tracker.process_cycle(_estimate(5.0, 5.0))
        tracker.process_cycle(None)

        tracker.process_cycle(_estimate(6.0, 5.0))

        assert tracker.state == TrackerState.ACTIVE
        assert overrides == []
        assert metrics.get_counter('automatic_recoveries') == 1
        recovered = tracker.events.drain()[-1]
        assert isinstance(recovered, PositionRecoveredEvent)
        assert not recovered.manual

    def test_stop(self, manual_config):
        tracker = _tracker(ScriptedLocator(), manual_config)
        tracker.process_cycle(_estimate(0.0, 0.0))
        tracker.process_cycle(None)
        tracker.stop()

        assert tracker.state == TrackerState.INACTIVE
        assert tracker.phase == RecoveryPhase.NONE
        assert tracker.process_cycle(None) is None

    def test_recent_positions_bounded(self):
        config = RecoveryConfig(background_attempts=False, history_size=3)
        tracker = _tracker(ScriptedLocator(), config)
        for i in range(5):
            tracker.process_cycle(_estimate(float(i), 0.0))
        assert [p.x for p in tracker.recent_positions] == [2.0, 3.0, 4.0]


class TestAutomaticAttempts:
    """Tests for attempt_recovery()."""

    def _recovering(self, locator, config, metrics=None, **kwargs) -> PositionTracker:
        tracker = _tracker(locator, config, metrics, **kwargs)
        tracker.process_cycle(_estimate(5.0, 5.0))
        tracker.process_cycle(None)
        tracker.events.drain()
        return tracker

    def test_accepts_confident_fix(self, manual_config):
        """Test that a fix at or above the threshold is accepted."""
        overrides = []
        locator = ScriptedLocator([_estimate(9.0, 9.0, confidence=0.6)])
        tracker = self._recovering(locator, manual_config, on_position_override=overrides.append)

        assert tracker.attempt_recovery()
        assert tracker.state == TrackerState.ACTIVE
        assert overrides == [Position(9.0, 9.0)]

        recovered = tracker.events.get(timeout=0)
        assert isinstance(recovered, PositionRecoveredEvent)
        assert recovered.attempt == 1

    def test_rejects_weak_fix(self, manual_config, metrics):
        """Test that a low-confidence fix is rejected with a progress event."""
        locator = ScriptedLocator([_estimate(9.0, 9.0, confidence=0.59)])
        tracker = self._recovering(locator, manual_config, metrics)

        assert not tracker.attempt_recovery()
        assert tracker.state == TrackerState.RECOVERING
        assert metrics.get_drop_count('recovery_rejected') == 1

        progress = tracker.events.get(timeout=0)
        assert isinstance(progress, RecoveryProgressEvent)
        assert progress.attempt == 1
        assert progress.max_attempts == 5
        assert progress.next_delay_s == 10.0

    def test_exhaustion_requires_manual(self, manual_config, metrics):
        """Test that five failed attempts switch to MANUAL_REQUIRED."""
        tracker = self._recovering(ScriptedLocator(), manual_config, metrics)

        for _ in range(5):
            assert not tracker.attempt_recovery()

        assert tracker.phase == RecoveryPhase.MANUAL_REQUIRED
        assert tracker.state == TrackerState.RECOVERING
        assert metrics.get_counter('recovery_attempts') == 5

        events = tracker.events.drain()
        assert [type(e) for e in events] == [RecoveryProgressEvent] * 4 + [ManualRecoveryRequiredEvent]
        assert events[-1].last_known_position == Position(5.0, 5.0)

        # No further automatic attempts
        assert not tracker.attempt_recovery()
        assert tracker.attempts == 5

    def test_locator_exception_counts_as_failure(self, manual_config, caplog):
        """Test that a raising locator is logged and treated as a failed attempt."""
        def locator():
            raise RuntimeError("radio off")

        tracker = self._recovering(locator, manual_config)

        assert not tracker.attempt_recovery()
        assert tracker.state == TrackerState.RECOVERING
        assert "Recovery attempt 1 failed" in caplog.text

    def test_not_recovering(self, manual_config):
        tracker = _tracker(ScriptedLocator([_estimate(0.0, 0.0)]), manual_config)
        assert not tracker.attempt_recovery()

    def test_backoff_schedule(self):
        """Test the delay table; the last delay repeats."""
        config = RecoveryConfig()
        assert [config.delay_for_attempt(i) for i in range(7)] == [5.0, 10.0, 15.0, 30.0, 60.0, 60.0, 60.0]

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            RecoveryConfig(backoff_delays_s=())
        with pytest.raises(ValueError):
            RecoveryConfig(confidence_threshold=1.5)
        with pytest.raises(ValueError):
            RecoveryConfig(failures_before_recovery=0)


class TestLandmarks:
    """Tests for nearby landmark reporting."""

    def test_landmarks_within(self):
        """Test same-floor filtering, radius and ordering."""
        landmarks = [
            Landmark("far", "Far door", Position(50.0, 0.0, 0)),
            Landmark("near", "Lift", Position(3.0, 0.0, 0)),
            Landmark("mid", "Cafe", Position(10.0, 0.0, 0)),
            Landmark("up", "Library", Position(1.0, 0.0, 1)),
        ]
        provider = landmarks_within(landmarks)

        nearby = provider(Position(0.0, 0.0, 0), 20.0)

        assert [lm.id for lm in nearby] == ["near", "mid"]

    def test_lost_event_carries_landmarks(self, manual_config):
        landmarks = [Landmark("desk", "Front desk", Position(6.0, 5.0, 0))]
        tracker = _tracker(ScriptedLocator(), manual_config, landmark_provider=landmarks_within(landmarks))
        tracker.process_cycle(_estimate(5.0, 5.0))
        tracker.process_cycle(None)

        lost = tracker.events.get(timeout=0)
        assert [lm.id for lm in lost.nearby_landmarks] == ["desk"]


class TestFallback:
    """Tests for the fallback position source."""

    def test_inactive_returns_none(self):
        assert FallbackPositionSource().tick(1.0) is None

    def test_confidence_decays_to_floor(self, metrics):
        """Test 0.5 start, 0.01 decay per tick, 0.05 floor."""
        fallback = FallbackPositionSource(metrics=metrics)
        fallback.start(Position(2.0, 3.0, 1))

        first = fallback.tick(1.0)
        second = fallback.tick(2.0)

        assert first.fix_type == FixType.FALLBACK
        assert first.sources == (PositionSource.FALLBACK,)
        assert first.position == Position(2.0, 3.0, 1)
        assert first.confidence == pytest.approx(0.5)
        assert second.confidence == pytest.approx(0.49)

        for _ in range(100):
            last = fallback.tick(3.0)
        assert last.confidence == pytest.approx(0.05)
        assert metrics.get_counter('fallback_estimates') == 102

    def test_follows_dead_reckoning(self):
        """Test that steps on the shared integrator move the fallback."""
        dr = DeadReckoningIntegrator()
        fallback = FallbackPositionSource(dr)
        fallback.start(Position(0.0, 0.0))

        dr.update_heading(0.0)
        dr.register_step(1.0)

        assert fallback.tick(1.0).position.y == pytest.approx(1.0)

    def test_restart_resets_confidence(self):
        fallback = FallbackPositionSource()
        fallback.start(Position(0.0, 0.0))
        fallback.tick(1.0)
        fallback.stop()
        assert fallback.tick(2.0) is None

        fallback.start(Position(1.0, 1.0))
        assert fallback.confidence == pytest.approx(0.5)

    def test_tracker_publishes_fallback(self, manual_config):
        """Test that a recovering tracker returns fallback estimates."""
        fallback = FallbackPositionSource()
        tracker = _tracker(ScriptedLocator(), manual_config, fallback=fallback)
        tracker.process_cycle(_estimate(4.0, 4.0))

        published = tracker.process_cycle(None)

        assert published.fix_type == FixType.FALLBACK
        assert published.position == Position(4.0, 4.0)

        tracker.set_manual_position(Position(1.0, 1.0))
        assert not fallback.is_active

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            FallbackConfig(initial_confidence=0.01, min_confidence=0.05)


class TestBackgroundWorker:
    """Tests for the recovery worker thread."""

    def test_worker_recovers(self):
        """Test that the worker retries after the backoff and resumes tracking."""
        recovered = threading.Event()
        config = RecoveryConfig(backoff_delays_s=(0.01,), max_attempts=3)
        locator = ScriptedLocator([None, _estimate(3.0, 3.0, confidence=0.9)])
        tracker = _tracker(locator, config)
        tracker.add_listener(
            lambda event: recovered.set() if isinstance(event, PositionRecoveredEvent) else None
        )

        tracker.process_cycle(_estimate(0.0, 0.0))
        tracker.process_cycle(None)

        assert recovered.wait(timeout=2.0)
        assert tracker.state == TrackerState.ACTIVE
        assert locator.calls == 2
        tracker.stop()

    def test_manual_position_cancels_worker(self):
        """Test that a manual fix stops pending attempts."""
        config = RecoveryConfig(backoff_delays_s=(30.0,), max_attempts=1)
        locator = ScriptedLocator()
        tracker = _tracker(locator, config)
        tracker.process_cycle(_estimate(0.0, 0.0))
        tracker.process_cycle(None)

        tracker.set_manual_position(Position(2.0, 2.0))

        assert tracker.state == TrackerState.ACTIVE
        assert locator.calls == 0
        tracker.stop()

    def test_stop_cancels_worker(self):
        """Test that stop() ends a worker waiting out its backoff."""
        config = RecoveryConfig(backoff_delays_s=(30.0,), max_attempts=1)
        locator = ScriptedLocator()
        tracker = _tracker(locator, config)
        tracker.process_cycle(_estimate(0.0, 0.0))
        tracker.process_cycle(None)
        worker = tracker._worker
        assert worker is not None and worker.is_alive()

        tracker.stop()

        assert not worker.is_alive()
        assert locator.calls == 0
        assert tracker.state == TrackerState.INACTIVE
