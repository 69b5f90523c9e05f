"""Behavioral feature vs. retention comparison.

Wallets are grouped along one dimension at a time (transaction type used,
number of distinct types, volume bucket, frequency bucket) and each group's
7-day and 30-day retention is compared. Groups below the minimum sample size
keep their numbers but are flagged as not statistically significant.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd
import structlog
from scipy import stats

from services.storage.models import utcnow
from services.storage.repository import AnalyticsRepository

logger = structlog.get_logger()

TYPE_CATEGORIES = ("transfers", "swaps", "bridges", "shielded")

VOLUME_LOW_ZATOSHI = 10_000_000
VOLUME_MEDIUM_ZATOSHI = 100_000_000

SIGNIFICANCE_ALPHA = 0.05


@dataclass
class GroupRetention:
    """Retention numbers for one group of one dimension."""
    group: str
    wallet_count: int
    retained_7d: int
    retained_30d: int
    retention_7d_rate: float
    retention_30d_rate: float
    avg_active_days: float
    avg_transactions: float
    avg_volume_zatoshi: float
    avg_lifecycle_days: float
    avg_complexity_score: Optional[float]
    statistically_significant: bool


@dataclass
class DimensionAnalysis:
    """All groups of one dimension plus heuristic confidence signals."""
    dimension: str
    groups: List[GroupRetention]
    total_wallets: int
    min_sample_size: int
    retention_spread: Optional[float] = None
    best_group: Optional[str] = None
    worst_group: Optional[str] = None
    p_value: Optional[float] = None
    statistically_significant: bool = False
    note: str = ""


@dataclass
class InsightsReport:
    analyses: Dict[str, DimensionAnalysis]
    insights: List[str] = field(default_factory=list)
    summary: str = ""
    generated_at: datetime = field(default_factory=utcnow)


def volume_bucket(volume: float) -> str:
    if volume <= 0:
        return "no_volume"
    if volume < VOLUME_LOW_ZATOSHI:
        return "low"
    if volume < VOLUME_MEDIUM_ZATOSHI:
        return "medium"
    return "high"


def frequency_bucket(active_days: int) -> str:
    if active_days <= 0:
        return "inactive"
    if active_days == 1:
        return "single_day"
    if active_days <= 3:
        return "low"
    if active_days <= 7:
        return "medium"
    return "high"


VOLUME_ORDER = ["no_volume", "low", "medium", "high"]
FREQUENCY_ORDER = ["inactive", "single_day", "low", "medium", "high"]


class CorrelationAnalyzer:
    """Compares retention across behavioral wallet groups."""

    def __init__(
        self,
        store: AnalyticsRepository,
        min_sample_size: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.min_sample_size = min_sample_size
        self.clock = clock
        self.logger = logger.bind(component="correlation_analyzer")

    async def build_profiles(
        self,
        project_id: Optional[str] = None,
        active_only: bool = True,
        as_of: Optional[datetime] = None,
    ) -> pd.DataFrame:
        """One row per wallet with lifetime activity features."""
        today = (as_of or self.clock()).date()
        rows = []
        for wallet in await self.store.list_wallets(project_id):
            metrics = [m for m in await self.store.get_activity_metrics(wallet.wallet_id, until=today) if m.is_active]
            if active_only and not metrics:
                continue

            dates = [m.activity_date for m in metrics]
            rows.append({
                "wallet_id": wallet.wallet_id,
                "active_days": len(metrics),
                "transaction_count": sum(m.transaction_count for m in metrics),
                "total_volume_zatoshi": sum(m.total_volume_zatoshi for m in metrics),
                "transfers": sum(m.transfers_count for m in metrics),
                "swaps": sum(m.swaps_count for m in metrics),
                "bridges": sum(m.bridges_count for m in metrics),
                "shielded": sum(m.shielded_count for m in metrics),
                "avg_complexity": float(np.mean([m.sequence_complexity_score for m in metrics])) if metrics else 0.0,
                "lifecycle_days": (max(dates) - min(dates)).days + 1 if dates else 0,
                "days_since_last_active": (today - max(dates)).days if dates else None,
            })

        columns = [
            "wallet_id", "active_days", "transaction_count", "total_volume_zatoshi", *TYPE_CATEGORIES,
            "avg_complexity", "lifecycle_days", "days_since_last_active",
        ]
        df = pd.DataFrame(rows, columns=columns)
        if df.empty:
            return df

        since_last = df["days_since_last_active"]
        df["retained_7d"] = since_last.notna() & (since_last <= 7)
        # 30-day retention includes wallets already retained at 7 days
        df["retained_30d"] = since_last.notna() & (since_last <= 30)
        df["distinct_types"] = (df[list(TYPE_CATEGORIES)] > 0).sum(axis=1)
        return df

    def _group_stats(self, group: str, frame: pd.DataFrame, with_complexity: bool) -> GroupRetention:
        n = len(frame)
        retained_7d = int(frame["retained_7d"].sum()) if n else 0
        retained_30d = int(frame["retained_30d"].sum()) if n else 0

        def mean(column: str) -> float:
            return round(float(frame[column].mean()), 2) if n else 0.0

        return GroupRetention(
            group=group,
            wallet_count=n,
            retained_7d=retained_7d,
            retained_30d=retained_30d,
            retention_7d_rate=round(retained_7d / n * 100, 2) if n else 0.0,
            retention_30d_rate=round(retained_30d / n * 100, 2) if n else 0.0,
            avg_active_days=mean("active_days"),
            avg_transactions=mean("transaction_count"),
            avg_volume_zatoshi=mean("total_volume_zatoshi"),
            avg_lifecycle_days=mean("lifecycle_days"),
            avg_complexity_score=mean("avg_complexity") if with_complexity else None,
            statistically_significant=n >= self.min_sample_size,
        )

    def _finalize(self, dimension: str, groups: List[GroupRetention], total: int, disjoint: bool) -> DimensionAnalysis:
        analysis = DimensionAnalysis(
            dimension=dimension, groups=groups, total_wallets=total, min_sample_size=self.min_sample_size
        )
        populated = [g for g in groups if g.wallet_count > 0]
        if len(populated) < 2:
            analysis.note = "insufficient_groups"
            return analysis

        best = max(populated, key=lambda g: (g.retention_7d_rate, g.wallet_count))
        worst = min(populated, key=lambda g: (g.retention_7d_rate, -g.wallet_count))
        analysis.best_group = best.group
        analysis.worst_group = worst.group
        analysis.retention_spread = round(best.retention_7d_rate - worst.retention_7d_rate, 2)

        if disjoint:
            analysis.p_value = _chi_square_p_value(populated)

        sample_ok = best.statistically_significant and worst.statistically_significant
        analysis.statistically_significant = bool(
            sample_ok and (analysis.p_value is None or analysis.p_value < SIGNIFICANCE_ALPHA)
        )
        if not sample_ok:
            analysis.note = "insufficient_sample"
        return analysis

    async def analyze_by_type(self, project_id: Optional[str] = None, active_only: bool = True,
                              as_of: Optional[datetime] = None) -> DimensionAnalysis:
        """Retention of wallets that used each transaction category (groups overlap)."""
        df = await self.build_profiles(project_id, active_only, as_of)
        groups = [
            self._group_stats(category, df[df[category] > 0] if not df.empty else df, with_complexity=False)
            for category in TYPE_CATEGORIES
        ]
        return self._finalize("transaction_type", groups, len(df), disjoint=False)

    async def analyze_by_diversity(self, project_id: Optional[str] = None, active_only: bool = True,
                                   as_of: Optional[datetime] = None) -> DimensionAnalysis:
        """Retention by number of distinct transaction categories used."""
        df = await self.build_profiles(project_id, active_only, as_of)
        groups = [
            self._group_stats(f"{count}_types", df[df["distinct_types"] == count] if not df.empty else df,
                              with_complexity=True)
            for count in range(len(TYPE_CATEGORIES) + 1)
        ]
        return self._finalize("diversity", groups, len(df), disjoint=True)

    async def analyze_by_volume(self, project_id: Optional[str] = None, active_only: bool = True,
                                as_of: Optional[datetime] = None) -> DimensionAnalysis:
        """Retention by total volume bucket."""
        df = await self.build_profiles(project_id, active_only, as_of)
        buckets = df["total_volume_zatoshi"].map(volume_bucket) if not df.empty else pd.Series(dtype=str)
        groups = [
            self._group_stats(name, df[buckets == name] if not df.empty else df, with_complexity=False)
            for name in VOLUME_ORDER
        ]
        return self._finalize("volume", groups, len(df), disjoint=True)

    async def analyze_by_frequency(self, project_id: Optional[str] = None, active_only: bool = True,
                                   as_of: Optional[datetime] = None) -> DimensionAnalysis:
        """Retention by number of active days."""
        df = await self.build_profiles(project_id, active_only, as_of)
        buckets = df["active_days"].map(frequency_bucket) if not df.empty else pd.Series(dtype=str)
        order = FREQUENCY_ORDER if not active_only else FREQUENCY_ORDER[1:]
        groups = [
            self._group_stats(name, df[buckets == name] if not df.empty else df, with_complexity=False)
            for name in order
        ]
        return self._finalize("frequency", groups, len(df), disjoint=True)

    async def generate_insights(self, project_id: Optional[str] = None, active_only: bool = True,
                                as_of: Optional[datetime] = None) -> InsightsReport:
        """Run all four groupings and derive plain-language findings from them."""
        analyses = {
            "transaction_type": await self.analyze_by_type(project_id, active_only, as_of),
            "diversity": await self.analyze_by_diversity(project_id, active_only, as_of),
            "volume": await self.analyze_by_volume(project_id, active_only, as_of),
            "frequency": await self.analyze_by_frequency(project_id, active_only, as_of),
        }

        insights = []
        for name, analysis in analyses.items():
            finding = _describe_spread(name, analysis)
            if finding:
                insights.append(finding)

            engaged = _most_engaged(analysis)
            if engaged:
                insights.append(engaged)

        trend = _diversity_trend(analyses["diversity"])
        if trend:
            insights.append(trend)

        report = InsightsReport(analyses=analyses, insights=insights, summary=_summarize(analyses))
        self.logger.info("insights_generated", insights=len(insights))
        return report


def _chi_square_p_value(groups: List[GroupRetention]) -> Optional[float]:
    table = np.array([[g.retained_7d, g.wallet_count - g.retained_7d] for g in groups])
    column_totals = table.sum(axis=0)
    if (column_totals == 0).any():
        return None
    _, p_value, _, _ = stats.chi2_contingency(table)
    return round(float(p_value), 4)


def _qualifier(analysis: DimensionAnalysis) -> str:
    return "" if analysis.statistically_significant else " (not statistically significant)"


def _describe_spread(name: str, analysis: DimensionAnalysis) -> Optional[str]:
    if analysis.best_group is None:
        return None
    best = next(g for g in analysis.groups if g.group == analysis.best_group)
    worst = next(g for g in analysis.groups if g.group == analysis.worst_group)
    return (
        f"{name}: '{best.group}' wallets show the highest 7-day retention "
        f"({best.retention_7d_rate:.1f}% vs {worst.retention_7d_rate:.1f}% for '{worst.group}')"
        f"{_qualifier(analysis)}"
    )


def _most_engaged(analysis: DimensionAnalysis) -> Optional[str]:
    populated = [g for g in analysis.groups if g.wallet_count > 0]
    if len(populated) < 2:
        return None
    engaged = max(populated, key=lambda g: (g.avg_active_days, g.wallet_count))
    return (
        f"{analysis.dimension}: '{engaged.group}' wallets are the most engaged "
        f"with {engaged.avg_active_days:.1f} active days on average"
    )


def _diversity_trend(analysis: DimensionAnalysis) -> Optional[str]:
    rates = [g.retention_7d_rate for g in analysis.groups if g.wallet_count > 0]
    if len(rates) < 2:
        return None
    steps = np.diff(rates)
    if (steps >= 0).all() and rates[-1] > rates[0]:
        direction = "increases"
    elif (steps <= 0).all() and rates[-1] < rates[0]:
        direction = "decreases"
    else:
        return "diversity: retention shows no consistent trend with the number of transaction types used"
    return f"diversity: retention {direction} with the number of transaction types used{_qualifier(analysis)}"


def _summarize(analyses: Dict[str, DimensionAnalysis]) -> str:
    comparable = [a for a in analyses.values() if a.retention_spread is not None]
    if not comparable:
        return "Not enough wallet activity to compare retention across groups."
    widest = max(comparable, key=lambda a: a.retention_spread)
    significant = sum(1 for a in comparable if a.statistically_significant)
    return (
        f"Largest 7-day retention spread is by {widest.dimension}: {widest.retention_spread:.1f} points "
        f"between '{widest.best_group}' and '{widest.worst_group}'. "
        f"{significant} of {len(comparable)} comparable dimensions meet the significance gate."
    )


def analysis_to_dict(analysis: DimensionAnalysis) -> Dict[str, Any]:
    return {
        "dimension": analysis.dimension,
        "total_wallets": analysis.total_wallets,
        "min_sample_size": analysis.min_sample_size,
        "retention_spread": analysis.retention_spread,
        "best_group": analysis.best_group,
        "worst_group": analysis.worst_group,
        "p_value": analysis.p_value,
        "statistically_significant": analysis.statistically_significant,
        "note": analysis.note,
        "groups": [vars(g).copy() for g in analysis.groups],
    }
