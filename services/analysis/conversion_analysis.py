"""
Stage-to-stage conversion and drop-off analysis.

For each adjacent pair of funnel stages::

    conversion_rate = achieved(next) / achieved(current) * 100   (0 when achieved(current) == 0)
    drop_off_rate   = 100 - conversion_rate

Drop-offs are graded into severity tiers, ranked by priority and impact, and
folded into a funnel health report with canned recommendations.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from services.cohorts.cohort_assigner import month_start, week_start
from services.storage.models import FUNNEL_STAGES, AdoptionStage, Wallet, WalletAdoptionStage, utcnow
from services.storage.repository import AnalyticsRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class DropOffThresholds:
    """Drop-off percentages at which a transition becomes medium or high severity."""
    high: float = 70.0
    medium: float = 50.0
    high_impact: float = 10.0


@dataclass(frozen=True)
class HealthBands:
    healthy: float = 60.0
    needs_attention: float = 40.0
    high_severity_penalty: float = 10.0


SEVERITY_PRIORITY = {"high": 3, "medium": 2, "low": 1}

# (from_stage, to_stage) -> (drop-off rate that triggers the advice, advice)
TRANSITION_RECOMMENDATIONS: Dict[Tuple[AdoptionStage, AdoptionStage], Tuple[float, List[str]]] = {
    (AdoptionStage.CREATED, AdoptionStage.FIRST_TX): (50.0, [
        "Improve onboarding flow to guide users to their first transaction",
        "Add tutorial or guided walkthrough for new users",
        "Reduce friction in wallet setup and funding process",
    ]),
    (AdoptionStage.FIRST_TX, AdoptionStage.FEATURE_USAGE): (40.0, [
        "Highlight additional features after first transaction",
        "Implement progressive feature discovery",
        "Add incentives for trying different transaction types",
    ]),
    (AdoptionStage.FEATURE_USAGE, AdoptionStage.RECURRING): (60.0, [
        "Implement retention campaigns for engaged users",
        "Add notifications or reminders for continued usage",
        "Analyze user journey to identify friction points",
    ]),
    (AdoptionStage.RECURRING, AdoptionStage.HIGH_VALUE): (70.0, [
        "Create incentives for high-value transactions",
        "Implement loyalty or rewards program",
        "Provide advanced features for power users",
    ]),
}

SEVERE_DROP_OFF_RECOMMENDATIONS = [
    "Conduct user research to understand barriers",
    "A/B test different approaches to improve conversion",
]

OVERALL_SUGGESTIONS = {
    "critical": [
        "Conduct comprehensive user experience audit",
        "Implement user feedback collection system",
        "Consider major onboarding flow redesign",
    ],
    "needs_attention": [
        "Focus on top 2-3 drop-off points",
        "Implement A/B testing for key conversion points",
        "Add user analytics to identify friction points",
    ],
    "healthy": [
        "Continue monitoring conversion trends",
        "Optimize for advanced user engagement",
        "Consider expanding feature set for power users",
    ],
}

TREND_GRANULARITIES = ("day", "week", "month")


@dataclass
class StageConversion:
    from_stage: AdoptionStage
    to_stage: AdoptionStage
    conversion_rate: float
    drop_off_rate: float
    wallets_converted: int
    wallets_dropped: int
    sample_size: int
    statistical_significance: bool


@dataclass
class DropOff:
    from_stage: AdoptionStage
    to_stage: AdoptionStage
    drop_off_rate: float
    wallets_dropped: int
    severity: str
    priority: int
    impact_score: float
    sample_size: int
    statistical_significance: bool
    recommendations: List[str] = field(default_factory=list)

    @property
    def transition(self) -> str:
        return f"{self.from_stage.value} -> {self.to_stage.value}"


@dataclass
class ConversionReport:
    project_id: str
    funnel_health_score: float
    status: str
    avg_conversion_rate: float
    high_severity_count: int
    conversions: List[StageConversion]
    drop_offs: List[DropOff]
    priority_actions: List[Dict[str, object]]
    overall_suggestions: List[str]
    cohort_funnels: Dict[str, List[StageConversion]] = field(default_factory=dict)
    trends: Dict[str, List[StageConversion]] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=utcnow)


def stage_counts(stages_by_wallet: Dict[str, List[WalletAdoptionStage]]) -> Dict[AdoptionStage, int]:
    """Wallets per reached stage; every wallet in scope has reached ``created``."""
    counts = {stage: 0 for stage in FUNNEL_STAGES}
    for rows in stages_by_wallet.values():
        counts[AdoptionStage.CREATED] += 1
        for row in rows:
            if row.achieved and row.stage != AdoptionStage.CREATED:
                counts[row.stage] += 1
    return counts


def compute_conversions(counts: Dict[AdoptionStage, int], min_sample_size: int) -> List[StageConversion]:
    """Pair adjacent funnel stages in order and compute their conversion."""
    conversions = []
    for current, following in zip(FUNNEL_STAGES, FUNNEL_STAGES[1:]):
        reached, converted = counts.get(current, 0), counts.get(following, 0)
        rate = round(converted / reached * 100, 2) if reached > 0 else 0.0
        conversions.append(StageConversion(
            from_stage=current,
            to_stage=following,
            conversion_rate=rate,
            drop_off_rate=100 - rate,
            wallets_converted=converted,
            wallets_dropped=max(reached - converted, 0),
            sample_size=reached,
            statistical_significance=reached >= min_sample_size,
        ))
    return conversions


def classify_severity(drop_off_rate: float, thresholds: DropOffThresholds) -> str:
    if drop_off_rate >= thresholds.high:
        return "high"
    if drop_off_rate >= thresholds.medium:
        return "medium"
    return "low"


def recommendations_for(conversion: StageConversion, thresholds: DropOffThresholds) -> List[str]:
    advice = []
    trigger, texts = TRANSITION_RECOMMENDATIONS.get((conversion.from_stage, conversion.to_stage), (None, []))
    if trigger is not None and conversion.drop_off_rate > trigger:
        advice.extend(texts)
    if conversion.drop_off_rate > thresholds.high:
        advice.extend(SEVERE_DROP_OFF_RECOMMENDATIONS)
    return advice


def analyze_drop_offs(conversions: List[StageConversion], thresholds: DropOffThresholds) -> List[DropOff]:
    """Grade each transition and order them by priority, then impact."""
    drop_offs = []
    for conversion in conversions:
        severity = classify_severity(conversion.drop_off_rate, thresholds)
        priority = SEVERITY_PRIORITY[severity]
        if not conversion.statistical_significance:
            priority = max(1, priority - 1)

        impact = conversion.drop_off_rate / 100 * conversion.wallets_dropped
        drop_offs.append(DropOff(
            from_stage=conversion.from_stage,
            to_stage=conversion.to_stage,
            drop_off_rate=conversion.drop_off_rate,
            wallets_dropped=conversion.wallets_dropped,
            severity=severity,
            priority=priority,
            impact_score=round(impact, 2),
            sample_size=conversion.sample_size,
            statistical_significance=conversion.statistical_significance,
            recommendations=recommendations_for(conversion, thresholds),
        ))
    drop_offs.sort(key=lambda d: (-d.priority, -d.impact_score))
    return drop_offs


def funnel_health(conversions: List[StageConversion], drop_offs: List[DropOff],
                  bands: HealthBands) -> Tuple[float, str, float, int]:
    """Returns (score, status, average conversion, high severity count)."""
    avg_conversion = sum(c.conversion_rate for c in conversions) / len(conversions) if conversions else 0.0
    high_count = sum(1 for d in drop_offs if d.severity == "high")
    score = round(min(max(avg_conversion - high_count * bands.high_severity_penalty, 0.0), 100.0), 2)
    if score < bands.needs_attention:
        status = "critical"
    elif score < bands.healthy:
        status = "needs_attention"
    else:
        status = "healthy"
    return score, status, round(avg_conversion, 2), high_count


def _trend_period(granularity: str, created_at: datetime) -> date:
    if granularity == "day":
        return created_at.astimezone(timezone.utc).date()
    if granularity == "week":
        return week_start(created_at)
    return month_start(created_at)


class ConversionAnalysisService:
    """Conversion, drop-off and funnel health analysis for one project."""

    def __init__(
        self,
        store: AnalyticsRepository,
        min_sample_size: int = 10,
        segment_min_sample_size: int = 5,
        thresholds: Optional[DropOffThresholds] = None,
        bands: Optional[HealthBands] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.min_sample_size = min_sample_size
        self.segment_min_sample_size = segment_min_sample_size
        self.thresholds = thresholds or DropOffThresholds()
        self.bands = bands or HealthBands()
        self.clock = clock
        self.logger = logger.bind(component="conversion_analysis")

    async def _load(
        self,
        project_id: str,
        created_between: Optional[Tuple[datetime, datetime]] = None,
    ) -> Tuple[List[Wallet], Dict[str, List[WalletAdoptionStage]]]:
        wallets = await self.store.get_project_wallets(project_id)
        stages = await self.store.get_project_stages(project_id)
        if created_between:
            start, end = created_between
            wallets = [w for w in wallets if start <= w.created_at < end]
        return wallets, {w.wallet_id: stages.get(w.wallet_id, []) for w in wallets}

    async def calculate_conversions(
        self,
        project_id: str,
        min_sample_size: Optional[int] = None,
        created_between: Optional[Tuple[datetime, datetime]] = None,
    ) -> List[StageConversion]:
        """
        Conversion between each adjacent pair of funnel stages.

        Args:
            project_id: Project whose wallets are analysed
            min_sample_size: Override for the significance gate
            created_between: Optional ``(start, end)`` filter on wallet creation time

        Returns:
            One StageConversion per transition, in funnel order
        """
        _, stages = await self._load(project_id, created_between)
        gate = self.min_sample_size if min_sample_size is None else min_sample_size
        conversions = compute_conversions(stage_counts(stages), gate)

        insignificant = [c for c in conversions if not c.statistical_significance]
        if insignificant:
            self.logger.warning("insufficient_sample", transitions=len(insignificant), min_sample_size=gate)
        return conversions

    async def identify_dropoffs(
        self,
        project_id: str,
        min_sample_size: Optional[int] = None,
        created_between: Optional[Tuple[datetime, datetime]] = None,
    ) -> List[DropOff]:
        conversions = await self.calculate_conversions(project_id, min_sample_size, created_between)
        return analyze_drop_offs(conversions, self.thresholds)

    async def get_cohort_funnels(self, project_id: str, limit: int = 10) -> Dict[str, List[StageConversion]]:
        """Conversions per weekly signup cohort, most recent cohorts first."""
        wallets, stages = await self._load(project_id)
        return self._segment(wallets, stages, week_start, limit)

    async def get_conversion_trends(
        self,
        project_id: str,
        granularity: str = "week",
        lookback_days: int = 90,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, List[StageConversion]]:
        """Conversions for wallets bucketed by creation day, week or month."""
        if granularity not in TREND_GRANULARITIES:
            raise ValueError(f"Unsupported granularity: {granularity}")
        now = as_of or self.clock()
        wallets, stages = await self._load(project_id, (now - timedelta(days=lookback_days), now))
        return self._segment(wallets, stages, lambda t: _trend_period(granularity, t))

    def _segment(
        self,
        wallets: List[Wallet],
        stages: Dict[str, List[WalletAdoptionStage]],
        period_of: Callable[[datetime], date],
        limit: Optional[int] = None,
    ) -> Dict[str, List[StageConversion]]:
        groups: Dict[date, Dict[str, List[WalletAdoptionStage]]] = defaultdict(dict)
        for wallet in wallets:
            groups[period_of(wallet.created_at)][wallet.wallet_id] = stages.get(wallet.wallet_id, [])

        periods = sorted(groups, reverse=True)
        if limit is not None:
            periods = periods[:limit]
        return {
            period.isoformat(): compute_conversions(stage_counts(groups[period]), self.segment_min_sample_size)
            for period in periods
        }

    async def generate_report(
        self,
        project_id: str,
        min_sample_size: Optional[int] = None,
        granularity: str = "week",
        cohort_limit: int = 10,
    ) -> ConversionReport:
        """Funnel health score, prioritized drop-offs and recommended actions."""
        conversions = await self.calculate_conversions(project_id, min_sample_size)
        drop_offs = analyze_drop_offs(conversions, self.thresholds)
        score, status, avg_conversion, high_count = funnel_health(conversions, drop_offs, self.bands)

        suggestions = list(OVERALL_SUGGESTIONS[status])
        if any(d.impact_score > self.thresholds.high_impact for d in drop_offs):
            suggestions.append("Address high-impact drop-off points immediately")

        report = ConversionReport(
            project_id=project_id,
            funnel_health_score=score,
            status=status,
            avg_conversion_rate=avg_conversion,
            high_severity_count=high_count,
            conversions=conversions,
            drop_offs=drop_offs,
            priority_actions=[
                {
                    "transition": d.transition,
                    "severity": d.severity,
                    "priority": d.priority,
                    "impact_score": d.impact_score,
                    "recommendations": d.recommendations,
                }
                for d in drop_offs[:3]
            ],
            overall_suggestions=suggestions,
            cohort_funnels=await self.get_cohort_funnels(project_id, cohort_limit),
            trends=await self.get_conversion_trends(project_id, granularity),
        )
        self.logger.info("conversion_report_generated", funnel_health=score, status=status)
        return report
