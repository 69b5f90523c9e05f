"""Project dashboard aggregation and its cache."""

from services.dashboard.aggregation import DashboardAggregationService, DashboardSnapshot, TimeSeries
from services.dashboard.cache import DashboardCache, make_key

__all__ = [
    "DashboardAggregationService",
    "DashboardCache",
    "DashboardSnapshot",
    "TimeSeries",
    "make_key",
]
