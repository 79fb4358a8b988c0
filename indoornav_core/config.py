"""
Indoor navigation core configuration.

Module-level dict sections hold deployment defaults; the build_* helpers
turn them into the per-component config dataclasses.
"""

import logging
from typing import Optional

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# Position fusion
FUSION_CONFIG = {
    "beacon_accuracy_m": 2.0,          # Nominal BLE candidate accuracy
    "wifi_accuracy_m": 4.0,            # Nominal Wi-Fi candidate accuracy
    "fingerprint_accuracy_m": 3.0,     # Nominal fingerprint candidate accuracy
    "max_dead_reckoning_hold_s": 3.0,  # Coast on dead reckoning at most this long
    "use_fingerprints": True,
    "max_reading_age_s": 10.0,         # Readings older than this are dropped
    "max_range_m": 50.0,               # Readings farther than this are dropped
}

# Navigation
NAVIGATION_CONFIG = {
    "off_path_threshold_m": 5.0,       # Deviation that makes a reroute eligible
    "min_reroute_interval_s": 15.0,    # Reroute cooldown
    "check_interval_s": 1.0,           # Position check cadence
    "floor_mismatch_penalty_m": 50.0,
    "arrival_threshold_m": 2.0,
    "walking_speed_mps": 1.4,
}

# Recovery
RECOVERY_CONFIG = {
    "backoff_delays_s": (5.0, 10.0, 15.0, 30.0, 60.0),
    "max_attempts": 5,
    "confidence_threshold": 0.6,
    "failures_before_recovery": 1,
    "landmark_radius_m": 20.0,
}

# Service loop
SERVICE_CONFIG = {
    "tick_interval_s": 0.5,            # Fusion tick period
    "summary_interval_s": 5.0,         # Status log period
}


def configure_logging(level: Optional[str] = None):
    """
    Apply LOGGING_CONFIG to the root logger.

    Args:
        level: Override level name (e.g. "DEBUG")
    """
    level_name = (level or LOGGING_CONFIG["level"]).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOGGING_CONFIG["format"],
    )
    logging.getLogger().setLevel(getattr(logging, level_name, logging.INFO))


def build_fusion_config(overrides: Optional[dict] = None):
    """FusionEngineConfig from FUSION_CONFIG (plus overrides)."""
    from indoornav_core.localization.fusion_engine import FusionEngineConfig
    from indoornav_core.localization.reading_gate import ReadingGateConfig

    section = dict(FUSION_CONFIG)
    section.update(overrides or {})
    return FusionEngineConfig(
        beacon_accuracy_m=section["beacon_accuracy_m"],
        wifi_accuracy_m=section["wifi_accuracy_m"],
        fingerprint_accuracy_m=section["fingerprint_accuracy_m"],
        max_dead_reckoning_hold_s=section["max_dead_reckoning_hold_s"],
        use_fingerprints=section["use_fingerprints"],
        gate_config=ReadingGateConfig(
            max_age_s=section["max_reading_age_s"],
            d_max_m=section["max_range_m"],
        ),
    )


def build_navigation_configs(overrides: Optional[dict] = None):
    """(NavigationControllerConfig, NavigationMetricsConfig) from NAVIGATION_CONFIG."""
    from indoornav_core.navigation.controller import NavigationControllerConfig
    from indoornav_core.navigation.metrics_calculator import NavigationMetricsConfig

    section = dict(NAVIGATION_CONFIG)
    section.update(overrides or {})
    controller_config = NavigationControllerConfig(
        off_path_threshold_m=section["off_path_threshold_m"],
        min_reroute_interval_s=section["min_reroute_interval_s"],
        check_interval_s=section["check_interval_s"],
        floor_mismatch_penalty_m=section["floor_mismatch_penalty_m"],
        arrival_threshold_m=section["arrival_threshold_m"],
    )
    metrics_config = NavigationMetricsConfig(walking_speed_mps=section["walking_speed_mps"])
    return controller_config, metrics_config


def build_recovery_config(overrides: Optional[dict] = None):
    """RecoveryConfig from RECOVERY_CONFIG (plus overrides)."""
    from indoornav_core.recovery.tracker import RecoveryConfig

    section = dict(RECOVERY_CONFIG)
    section.update(overrides or {})
    return RecoveryConfig(
        backoff_delays_s=tuple(section["backoff_delays_s"]),
        max_attempts=section["max_attempts"],
        confidence_threshold=section["confidence_threshold"],
        failures_before_recovery=section["failures_before_recovery"],
        landmark_radius_m=section["landmark_radius_m"],
    )
