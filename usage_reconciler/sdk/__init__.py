"""
SDK for usage reconciler.

Records live usage events for later reconciliation.
"""

from .recorder import LiveUsageRecorder

__all__ = ["LiveUsageRecorder"]
