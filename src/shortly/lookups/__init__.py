"""
Lookup fact aggregation.
"""

from .aggregator import AggregateTarget, LookupAggregator
from .models import Aggregate, AggregateUpdate, LookupFact
from .notifier import LiveAnalyticsNotifier, live_body

__all__ = [
    "Aggregate",
    "AggregateTarget",
    "AggregateUpdate",
    "LiveAnalyticsNotifier",
    "LookupAggregator",
    "LookupFact",
    "live_body",
]
