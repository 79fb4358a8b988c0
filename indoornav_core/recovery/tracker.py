"""
Position Tracker (recovery state machine).

States:
    INACTIVE -> INITIALIZING -> ACTIVE <-> RECOVERING -> INACTIVE

ACTIVE -> RECOVERING when failures_before_recovery consecutive cycles
produce no estimate. On entry the tracker:
1. Emits PositionLostEvent with the last known position and nearby landmarks
2. Starts the fallback source anchored at the last known position
3. Starts a cancellable backoff worker that probes the radio estimators

Each attempt is accepted only at confidence >= confidence_threshold.
When all attempts fail the phase becomes MANUAL_REQUIRED; a
user-confirmed position (set_manual_position) returns to ACTIVE from any
state.
"""

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional, Tuple
import logging
import threading
import time

from indoornav_core.proto.position import Position
from indoornav_core.proto.position_estimate import PositionEstimate
from indoornav_core.proto.recovery_events import (
    Landmark,
    ManualRecoveryRequiredEvent,
    PositionLostEvent,
    PositionRecoveredEvent,
    RecoveryEvent,
    RecoveryProgressEvent,
)
from indoornav_core.recovery.fallback import FallbackPositionSource
from indoornav_core.io.channel import BoundedEventQueue
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)

LandmarkProvider = Callable[[Position, float], List[Landmark]]


class TrackerState(Enum):
    INACTIVE = "INACTIVE"
    INITIALIZING = "INITIALIZING"
    ACTIVE = "ACTIVE"
    RECOVERING = "RECOVERING"


class RecoveryPhase(Enum):
    NONE = "NONE"
    AUTOMATIC = "AUTOMATIC"
    MANUAL_REQUIRED = "MANUAL_REQUIRED"


@dataclass
class RecoveryConfig:
    """
    Configuration for the recovery state machine.

    Attributes:
        backoff_delays_s: Wait before each attempt; the last value repeats
        max_attempts: Automatic attempts before manual recovery is required
        confidence_threshold: Minimum probe confidence to accept
        failures_before_recovery: Consecutive failed cycles that trigger recovery
        background_attempts: Run attempts on a worker thread (False = caller
            drives attempt_recovery())
        landmark_radius_m: Radius for nearby landmarks (m)
        history_size: Recent positions kept
        event_queue_size: Capacity of the event queue
    """

    backoff_delays_s: Tuple[float, ...] = (5.0, 10.0, 15.0, 30.0, 60.0)
    max_attempts: int = 5
    confidence_threshold: float = 0.6
    failures_before_recovery: int = 1
    background_attempts: bool = True
    landmark_radius_m: float = 20.0
    history_size: int = 10
    event_queue_size: int = 100

    def __post_init__(self):
        """Validate configuration."""
        if not self.backoff_delays_s:
            raise ValueError("backoff_delays_s cannot be empty")
        if any(d < 0 for d in self.backoff_delays_s):
            raise ValueError("Backoff delays cannot be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0 <= self.confidence_threshold <= 1:
            raise ValueError("confidence_threshold must be in [0,1]")
        if self.failures_before_recovery < 1:
            raise ValueError("failures_before_recovery must be >= 1")
        if self.landmark_radius_m < 0:
            raise ValueError("landmark_radius cannot be negative")

    def delay_for_attempt(self, attempt_index: int) -> float:
        """Backoff before the zero-based attempt_index."""
        return self.backoff_delays_s[min(attempt_index, len(self.backoff_delays_s) - 1)]


class PositionTracker:
    """
    Tracking lifecycle and signal-loss recovery.

    Usage:
        tracker = PositionTracker(
            probe=engine.probe,
            fallback=FallbackPositionSource(engine.dead_reckoning),
            on_position_override=engine.reset,
            metrics=metrics,
        )
        tracker.events.add_listener(ui.handle_recovery_event)

        tracker.start()
        while running:
            estimate = tracker.process_cycle(engine.tick())
            if estimate is not None:
                position_channel.publish(estimate)

        tracker.set_manual_position(confirmed)   # from the UI
        tracker.stop()

    Notes:
        - The backoff worker never touches the fusion pipeline directly;
          it calls probe() and hands accepted results back through
          on_position_override
        - stop() and set_manual_position() cancel any in-flight attempt
    """

    def __init__(
        self,
        probe: Callable[[], Optional[PositionEstimate]],
        fallback: Optional[FallbackPositionSource] = None,
        landmark_provider: Optional[LandmarkProvider] = None,
        on_position_override: Optional[Callable[[Position], None]] = None,
        config: Optional[RecoveryConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RecoveryConfig()
        self.metrics = metrics or MetricsCollector()
        self.probe = probe
        self.fallback = fallback
        self.landmark_provider = landmark_provider
        self.on_position_override = on_position_override
        self._clock = clock

        self.events: BoundedEventQueue[RecoveryEvent] = BoundedEventQueue(
            maxsize=self.config.event_queue_size, metrics=self.metrics)

        self._lock = threading.RLock()
        self._state = TrackerState.INACTIVE
        self._phase = RecoveryPhase.NONE
        self._consecutive_failures = 0
        self._attempts = 0
        self._generation = 0
        self._last_known: Optional[Position] = None
        self._history: Deque[Position] = deque(maxlen=self.config.history_size)

        self._worker: Optional[threading.Thread] = None
        self._worker_stop = threading.Event()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        with self._lock:
            return self._state

    @property
    def phase(self) -> RecoveryPhase:
        with self._lock:
            return self._phase

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._attempts

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def last_known_position(self) -> Optional[Position]:
        with self._lock:
            return self._last_known

    @property
    def recent_positions(self) -> List[Position]:
        with self._lock:
            return list(self._history)

    def add_listener(self, listener: Callable[[RecoveryEvent], None]):
        self.events.add_listener(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        with self._lock:
            if self._state != TrackerState.INACTIVE:
                logger.warning(f"Tracker already started ({self._state.value})")
                return
            self._state = TrackerState.INITIALIZING
            self._phase = RecoveryPhase.NONE
            self._consecutive_failures = 0
        logger.info("Position tracking initializing")

    def stop(self):
        """Cancel recovery work and go INACTIVE."""
        self._cancel_worker()
        if self.fallback is not None:
            self.fallback.stop()
        with self._lock:
            self._generation += 1
            self._state = TrackerState.INACTIVE
            self._phase = RecoveryPhase.NONE
            self._consecutive_failures = 0
            self._attempts = 0
        logger.info("Position tracking stopped")

    def process_cycle(self, estimate: Optional[PositionEstimate]) -> Optional[PositionEstimate]:
        """
        Feed the result of one pipeline cycle.

        Args:
            estimate: Engine output, or None for a failed cycle

        Returns:
            Estimate to publish: the engine's, the fallback's while
            recovering, or None
        """
        with self._lock:
            state = self._state
            if state == TrackerState.INACTIVE:
                return None
            if state == TrackerState.INITIALIZING:
                self._state = state = TrackerState.ACTIVE
                logger.info("Position tracking active")

        if estimate is not None:
            if state == TrackerState.RECOVERING:
                self._resume(estimate.position, manual=False)
            else:
                with self._lock:
                    self._consecutive_failures = 0
                    self._remember(estimate.position)
            return estimate

        self.metrics.increment('failed_cycles')

        if state == TrackerState.ACTIVE:
            with self._lock:
                self._consecutive_failures += 1
                should_recover = self._consecutive_failures >= self.config.failures_before_recovery
            if should_recover:
                self._enter_recovery()

        if self.fallback is not None:
            return self.fallback.tick(self._clock())
        return None

    def set_manual_position(self, position: Position):
        """Force ACTIVE at a user-confirmed position (valid from any state)."""
        self._resume(position, manual=True)

    # ------------------------------------------------------------------
    # Recovery attempts
    # ------------------------------------------------------------------

    def attempt_recovery(self) -> bool:
        """
        Run one automatic recovery attempt.

        Returns:
            True if the probe result was accepted and tracking resumed
        """
        with self._lock:
            if self._state != TrackerState.RECOVERING or self._phase != RecoveryPhase.AUTOMATIC:
                return False
            generation = self._generation
            self._attempts += 1
            attempt = self._attempts

        self.metrics.increment('recovery_attempts')
        logger.info(f"Recovery attempt {attempt}/{self.config.max_attempts}")

        try:
            estimate = self.probe()
        except Exception:
            logger.exception(f"Recovery attempt {attempt} failed")
            estimate = None

        with self._lock:
            if generation != self._generation or self._state != TrackerState.RECOVERING:
                return False

        if estimate is not None and estimate.confidence >= self.config.confidence_threshold:
            self._resume(estimate.position, manual=False, attempt=attempt)
            return True

        self.metrics.increment_drop('recovery_rejected')
        now = self._clock()

        if attempt >= self.config.max_attempts:
            with self._lock:
                self._phase = RecoveryPhase.MANUAL_REQUIRED
                last_known = self._last_known
            logger.warning("Automatic recovery exhausted, manual position required")
            self.events.put(ManualRecoveryRequiredEvent(
                last_known_position=last_known,
                nearby_landmarks=self._nearby_landmarks(last_known),
                timestamp=now,
            ))
        else:
            self.events.put(RecoveryProgressEvent(
                attempt=attempt,
                max_attempts=self.config.max_attempts,
                next_delay_s=self.config.delay_for_attempt(attempt),
                timestamp=now,
            ))
        return False

    def _enter_recovery(self):
        with self._lock:
            if self._state != TrackerState.ACTIVE:
                return
            self._state = TrackerState.RECOVERING
            self._phase = RecoveryPhase.AUTOMATIC
            self._attempts = 0
            self._generation += 1
            generation = self._generation
            last_known = self._last_known

        logger.warning(f"Position lost, recovering (last known: {last_known})")
        self.events.put(PositionLostEvent(
            last_known_position=last_known,
            nearby_landmarks=self._nearby_landmarks(last_known),
            timestamp=self._clock(),
        ))

        if self.fallback is not None and last_known is not None:
            self.fallback.start(last_known)

        if self.config.background_attempts:
            self._start_worker(generation)

    def _resume(self, position: Position, manual: bool, attempt: int = 0):
        self._cancel_worker()
        if self.fallback is not None:
            self.fallback.stop()

        if manual or attempt > 0:
            if self.on_position_override is not None:
                self.on_position_override(position)

        with self._lock:
            was_recovering = self._state == TrackerState.RECOVERING
            self._generation += 1
            self._state = TrackerState.ACTIVE
            self._phase = RecoveryPhase.NONE
            self._consecutive_failures = 0
            self._attempts = 0
            self._remember(position)

        if manual:
            self.metrics.increment('manual_recoveries')
            logger.info(f"Manual position set: {position}")
        elif was_recovering:
            self.metrics.increment('automatic_recoveries')
            logger.info(f"Position recovered at {position}")

        if manual or was_recovering:
            self.events.put(PositionRecoveredEvent(
                position=position,
                manual=manual,
                attempt=attempt,
                timestamp=self._clock(),
            ))

    def _start_worker(self, generation: int):
        self._worker_stop = threading.Event()
        self._worker = threading.Thread(
            target=self._worker_loop,
            args=(generation, self._worker_stop),
            name='recovery-worker',
            daemon=True,
        )
        self._worker.start()

    def _worker_loop(self, generation: int, stop_event: threading.Event):
        for attempt_index in range(self.config.max_attempts):
            if stop_event.wait(self.config.delay_for_attempt(attempt_index)):
                return
            with self._lock:
                if generation != self._generation:
                    return
            if self.attempt_recovery():
                return
        logger.debug("Recovery worker finished")

    def _cancel_worker(self, timeout: float = 2.0):
        self._worker_stop.set()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
            if worker.is_alive():
                logger.warning("Recovery worker did not stop in time")
        self._worker = None

    def _remember(self, position: Position):
        """Record a good position; caller holds the lock."""
        self._last_known = position
        self._history.append(position)

    def _nearby_landmarks(self, position: Optional[Position]) -> Tuple[Landmark, ...]:
        if position is None or self.landmark_provider is None:
            return ()
        try:
            landmarks = self.landmark_provider(position, self.config.landmark_radius_m)
        except Exception:
            logger.exception("Landmark provider failed")
            return ()
        return tuple(landmarks)


def landmarks_within(landmarks: List[Landmark]) -> LandmarkProvider:
    """
    LandmarkProvider over a fixed list: same-floor landmarks within the
    radius, nearest first.
    """
    def provider(position: Position, radius_m: float) -> List[Landmark]:
        nearby = [
            lm for lm in landmarks
            if lm.position.is_same_floor(position) and lm.position.distance_2d(position) <= radius_m
        ]
        return sorted(nearby, key=lambda lm: lm.position.distance_2d(position))

    return provider
