"""Behavioral correlation and funnel conversion analysis."""

from services.analysis.conversion_analysis import (
    ConversionAnalysisService,
    ConversionReport,
    DropOff,
    DropOffThresholds,
    HealthBands,
    StageConversion,
)
from services.analysis.correlation_analyzer import (
    CorrelationAnalyzer,
    DimensionAnalysis,
    GroupRetention,
    InsightsReport,
)

__all__ = [
    "ConversionAnalysisService",
    "ConversionReport",
    "CorrelationAnalyzer",
    "DimensionAnalysis",
    "DropOff",
    "DropOffThresholds",
    "GroupRetention",
    "HealthBands",
    "InsightsReport",
    "StageConversion",
]
