"""Allotment tracking: acquisition, analysis, prediction and notification."""

from .engine import AllotmentEngine, PerformanceMetrics, TrackingConfig
from .ports import AllotmentStore, AnalyticsProvider, Notifier, ResultSource
from .registry import BatchReport, ItemOutcome, OutcomeStatus, QueueName, TrackedOffering, TrackingRegistry


__all__ = [
    "AllotmentEngine",
    "AllotmentStore",
    "AnalyticsProvider",
    "BatchReport",
    "ItemOutcome",
    "Notifier",
    "OutcomeStatus",
    "PerformanceMetrics",
    "QueueName",
    "ResultSource",
    "TrackedOffering",
    "TrackingConfig",
    "TrackingRegistry",
]
