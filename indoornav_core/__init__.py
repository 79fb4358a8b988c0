"""
Indoor Navigation Core Package.

Multi-source indoor positioning (BLE lateration, Wi-Fi, RSSI fingerprints,
dead reckoning) fused with a Kalman filter, plus graph-based routing,
turn-by-turn guidance and signal-loss recovery.

Package structure:
- io: Latest-value channels and bounded event queues
- proto: Data schemas exchanged between pipeline stages
- localization: Estimators, gating and fusion
- navigation: Graph, path search, instructions, rerouting
- recovery: Tracking state machine and fallback source
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.1.0"
