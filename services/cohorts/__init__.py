"""Signup cohort assignment and retention."""

from services.cohorts.cohort_assigner import (
    CohortAssigner,
    CohortAssignmentResult,
    CohortInfo,
    CohortStatistics,
    month_start,
    week_start,
)
from services.cohorts.retention import RetentionCalculator

__all__ = [
    "CohortAssigner",
    "CohortAssignmentResult",
    "CohortInfo",
    "CohortStatistics",
    "RetentionCalculator",
    "month_start",
    "week_start",
]
