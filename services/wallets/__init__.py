"""
Wallet analysis services

This package contains the per-wallet services: daily activity aggregation,
adoption stage tracking and productivity scoring.
"""

from .activity_aggregator import (
    ActivityAggregator,
    build_daily_metric,
    sequence_complexity
)

from .adoption_stages import (
    AdoptionStageEngine,
    AdoptionStatus,
    ActivitySnapshot,
    FunnelStageSummary,
    StageCriteria,
    conversion_probability,
    criteria_met,
    summarize_funnel
)

from .productivity_scorer import (
    ProductivityScorer,
    ProductivitySummary,
    ScoringWeights,
    StatusThresholds,
    ActivityBaseline,
    classify_risk,
    classify_status
)

__all__ = [
    # Activity
    'ActivityAggregator',
    'build_daily_metric',
    'sequence_complexity',

    # Adoption stages
    'AdoptionStageEngine',
    'AdoptionStatus',
    'ActivitySnapshot',
    'FunnelStageSummary',
    'StageCriteria',
    'conversion_probability',
    'criteria_met',
    'summarize_funnel',

    # Productivity
    'ProductivityScorer',
    'ProductivitySummary',
    'ScoringWeights',
    'StatusThresholds',
    'ActivityBaseline',
    'classify_risk',
    'classify_status'
]
