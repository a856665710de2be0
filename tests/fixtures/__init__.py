"""
Test Fixtures Package
Network-free routing providers and an inline job scheduler
"""

from .fakes import FailingRoutingProvider, FixedRoutingProvider, RecordingScheduler

__all__ = [
    'FailingRoutingProvider',
    'FixedRoutingProvider',
    'RecordingScheduler',
]
