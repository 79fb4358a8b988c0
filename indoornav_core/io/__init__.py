"""
I/O Module: In-process channels between pipeline stages and consumers.

- Latest-value-wins channel for continuous streams (position, progress)
- Bounded event queue with drop-oldest backpressure (recovery, reroute)
"""

from .channel import LatestValueChannel, BoundedEventQueue

__all__ = ['LatestValueChannel', 'BoundedEventQueue']
