"""Analytics pipeline for ledger activity.

Separate from the ledger itself: events describe what happened after the
fact and losing one never affects a balance.
"""

from ledger_engine.metering.collector import (
    EventCollector,
    FileSink,
    LoggingSink,
    configure_collector,
    get_collector,
    track_event,
)
from ledger_engine.metering.events import AnalyticsEvent, AnalyticsEventType

__all__ = [
    "AnalyticsEvent",
    "AnalyticsEventType",
    "EventCollector",
    "FileSink",
    "LoggingSink",
    "configure_collector",
    "get_collector",
    "track_event",
]
