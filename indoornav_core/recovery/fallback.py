"""
Fallback Position Source.

Degraded position source used while the tracker is recovering: dead
reckoning anchored at the last known position, with a confidence that
decays on every tick so consumers can see the estimate aging.
"""

from typing import Optional
from dataclasses import dataclass
import logging
import time

from indoornav_core.proto.position import Position, PositionSource
from indoornav_core.proto.position_estimate import PositionEstimate, FixType
from indoornav_core.localization.dead_reckoning import DeadReckoningIntegrator
from indoornav_core.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class FallbackConfig:
    """
    Configuration for the fallback source.

    Attributes:
        initial_confidence: Confidence right after start
        confidence_decay: Subtracted on every tick
        min_confidence: Lower bound for confidence
    """

    initial_confidence: float = 0.5
    confidence_decay: float = 0.01
    min_confidence: float = 0.05

    def __post_init__(self):
        """Validate configuration."""
        if not 0 <= self.min_confidence <= self.initial_confidence <= 1:
            raise ValueError("Require 0 <= min_confidence <= initial_confidence <= 1")
        if self.confidence_decay < 0:
            raise ValueError("confidence_decay cannot be negative")


class FallbackPositionSource:
    """
    Dead-reckoning position source with decaying confidence.

    Usage:
        fallback = FallbackPositionSource(engine.dead_reckoning, metrics=metrics)
        fallback.start(last_known_position)

        estimate = fallback.tick()   # FixType.FALLBACK
        fallback.stop()

    Notes:
        - The integrator may be shared with the fusion engine, so steps fed
          through the engine keep moving the fallback position
        - tick() returns None while stopped
    """

    def __init__(
        self,
        dead_reckoning: Optional[DeadReckoningIntegrator] = None,
        config: Optional[FallbackConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock=time.time,
    ):
        self.config = config or FallbackConfig()
        self.metrics = metrics or MetricsCollector()
        self.dead_reckoning = dead_reckoning or DeadReckoningIntegrator(metrics=self.metrics)
        self._clock = clock

        self._active = False
        self._confidence = self.config.initial_confidence
        self._ticks = 0

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def confidence(self) -> float:
        return self._confidence

    def start(self, anchor: Position):
        """Anchor dead reckoning at anchor and restart the confidence decay."""
        self.dead_reckoning.reset(anchor)
        self._confidence = self.config.initial_confidence
        self._ticks = 0
        self._active = True
        logger.info(f"Fallback positioning started at {anchor}")

    def stop(self):
        if self._active:
            logger.info(f"Fallback positioning stopped after {self._ticks} ticks")
        self._active = False

    def tick(self, t_now: Optional[float] = None) -> Optional[PositionEstimate]:
        """
        Produce one fallback estimate and decay confidence.

        Returns:
            FALLBACK estimate, or None if stopped or unanchored
        """
        if not self._active:
            return None

        position = self.dead_reckoning.current_position
        if position is None:
            return None

        t_now = self._clock() if t_now is None else t_now
        estimate = PositionEstimate(
            position=position,
            accuracy=self.dead_reckoning.accuracy,
            confidence=self._confidence,
            fix_type=FixType.FALLBACK,
            timestamp=t_now,
            sources=(PositionSource.FALLBACK,),
        )

        self._confidence = max(
            self._confidence - self.config.confidence_decay,
            self.config.min_confidence,
        )
        self._ticks += 1
        self.metrics.increment('fallback_estimates')
        return estimate
