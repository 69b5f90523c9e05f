"""
Composite wallet productivity scoring.

Four sub-scores, each clamped to [0, 100]:
- retention: recency of the last active day and active-day frequency relative to wallet age
- adoption: weighted sum of achieved funnel stages (later stages weigh more)
- activity: recent transaction count and volume against a project or global baseline
- diversity: distinct transaction types and features used

``total_score`` is the weighted sum of the four with weights summing to 1.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

import numpy as np
import structlog

from services.batch import BatchResult
from services.errors import NotFoundError
from services.storage.models import (
    AdoptionStage,
    ProcessedTransaction,
    ProductivityScore,
    Wallet,
    WalletActivityMetric,
    WalletAdoptionStage,
    utcnow,
)
from services.storage.repository import AnalyticsRepository
from wallet_analytics.common.logging_setup import log_batch_summary

logger = structlog.get_logger()


@dataclass(frozen=True)
class ScoringWeights:
    retention: float = 0.35
    adoption: float = 0.25
    activity: float = 0.25
    diversity: float = 0.15

    def __post_init__(self):
        total = self.retention + self.adoption + self.activity + self.diversity
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1, got {total}")
        if min(self.retention, self.adoption, self.activity, self.diversity) < 0:
            raise ValueError("Scoring weights must be non-negative")

    @classmethod
    def from_tuple(cls, weights) -> "ScoringWeights":
        return cls(*weights)


@dataclass(frozen=True)
class StatusThresholds:
    healthy: float = 70.0
    churn: float = 40.0
    low_risk: float = 60.0
    medium_risk: float = 30.0


@dataclass(frozen=True)
class ActivityBaseline:
    """Typical per-wallet activity over the scoring window."""
    transactions: float = 10.0
    volume_zatoshi: float = 10_000_000.0
    source: str = "global"


STAGE_WEIGHTS: Dict[AdoptionStage, float] = {
    AdoptionStage.CREATED: 5.0,
    AdoptionStage.FIRST_TX: 10.0,
    AdoptionStage.FEATURE_USAGE: 20.0,
    AdoptionStage.RECURRING: 30.0,
    AdoptionStage.HIGH_VALUE: 35.0,
}

# (max days since last activity, points)
RECENCY_POINTS = [(1, 50.0), (3, 40.0), (7, 30.0), (14, 15.0), (30, 5.0)]

WINDOW_DAYS = 30
MAX_COUNTED_TYPES = 4
MAX_COUNTED_FEATURES = 3
MIN_WALLETS_FOR_PROJECT_BASELINE = 5


def _clamp(value: float) -> float:
    return round(min(max(value, 0.0), 100.0), 2)


def retention_score(wallet: Wallet, metrics: List[WalletActivityMetric], today: date) -> float:
    active_days = sorted(m.activity_date for m in metrics if m.is_active and m.activity_date <= today)
    if not active_days:
        return 0.0

    days_since_last = (today - active_days[-1]).days
    recency = next((points for limit, points in RECENCY_POINTS if days_since_last <= limit), 0.0)

    age_days = max((today - wallet.created_at.date()).days + 1, 1)
    window = min(age_days, WINDOW_DAYS)
    window_start = today - timedelta(days=window - 1)
    active_in_window = sum(1 for d in active_days if d >= window_start)
    # Active every other day earns full frequency credit
    frequency = 50.0 * min(1.0, 2.0 * active_in_window / window)

    return _clamp(recency + frequency)


def adoption_score(stages: List[WalletAdoptionStage]) -> float:
    return _clamp(sum(STAGE_WEIGHTS.get(s.stage, 0.0) for s in stages if s.achieved))


def activity_score(metrics: List[WalletActivityMetric], today: date, baseline: ActivityBaseline) -> float:
    window_start = today - timedelta(days=WINDOW_DAYS - 1)
    recent = [m for m in metrics if window_start <= m.activity_date <= today]
    transactions = sum(m.transaction_count for m in recent)
    volume = sum(m.total_volume_zatoshi for m in recent)
    # Twice the baseline earns the full half of each component
    tx_part = 50.0 * min(1.0, transactions / (2.0 * baseline.transactions)) if baseline.transactions > 0 else 0.0
    vol_part = 50.0 * min(1.0, volume / (2.0 * baseline.volume_zatoshi)) if baseline.volume_zatoshi > 0 else 0.0
    return _clamp(tx_part + vol_part)


def diversity_score(transactions: List[ProcessedTransaction]) -> float:
    types = len({tx.tx_type for tx in transactions})
    features = len({tx.feature_used for tx in transactions if tx.feature_used})
    type_part = 70.0 * min(types, MAX_COUNTED_TYPES) / MAX_COUNTED_TYPES
    feature_part = 30.0 * min(features, MAX_COUNTED_FEATURES) / MAX_COUNTED_FEATURES
    return _clamp(type_part + feature_part)


def classify_status(total: float, thresholds: StatusThresholds) -> str:
    if total >= thresholds.healthy:
        return "healthy"
    if total < thresholds.churn:
        return "churn"
    return "at_risk"


def classify_risk(total: float, thresholds: StatusThresholds) -> str:
    if total >= thresholds.low_risk:
        return "low"
    if total >= thresholds.medium_risk:
        return "medium"
    return "high"


def color_indicator(total: float) -> str:
    if total >= 70:
        return "green"
    if total >= 40:
        return "yellow"
    return "red"


@dataclass
class ProductivitySummary:
    project_id: str
    total_wallets: int
    scored_wallets: int
    avg_total_score: float
    avg_retention_score: float
    avg_adoption_score: float
    avg_activity_score: float
    avg_diversity_score: float
    status_distribution: Dict[str, int] = field(default_factory=dict)
    risk_distribution: Dict[str, int] = field(default_factory=dict)
    health_percentage: float = 0.0


class ProductivityScorer:
    """Computes and stores the latest productivity score for wallets."""

    def __init__(
        self,
        store: AnalyticsRepository,
        weights: Optional[ScoringWeights] = None,
        thresholds: Optional[StatusThresholds] = None,
        default_baseline: Optional[ActivityBaseline] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.weights = weights or ScoringWeights()
        self.thresholds = thresholds or StatusThresholds()
        self.default_baseline = default_baseline or ActivityBaseline()
        self.clock = clock
        self.logger = logger.bind(component="productivity_scorer")

    def combine(self, retention: float, adoption: float, activity: float, diversity: float) -> float:
        w = self.weights
        return (
            w.retention * retention
            + w.adoption * adoption
            + w.activity * activity
            + w.diversity * diversity
        )

    async def compute_baseline(self, project_id: str, as_of: Optional[datetime] = None) -> ActivityBaseline:
        """Median recent activity across a project's active wallets, or the global default."""
        today = (as_of or self.clock()).date()
        since = today - timedelta(days=WINDOW_DAYS - 1)
        metrics = await self.store.get_project_activity(project_id, since=since, until=today)

        tx_by_wallet: Counter = Counter()
        volume_by_wallet: Counter = Counter()
        for m in metrics:
            tx_by_wallet[m.wallet_id] += m.transaction_count
            volume_by_wallet[m.wallet_id] += m.total_volume_zatoshi

        if len(tx_by_wallet) < MIN_WALLETS_FOR_PROJECT_BASELINE:
            return self.default_baseline

        median_tx = float(np.median(list(tx_by_wallet.values())))
        median_volume = float(np.median(list(volume_by_wallet.values())))
        if median_tx <= 0 or median_volume <= 0:
            return self.default_baseline
        return ActivityBaseline(transactions=median_tx, volume_zatoshi=median_volume, source="project")

    async def score_wallet(
        self,
        wallet: Wallet,
        as_of: Optional[datetime] = None,
        baseline: Optional[ActivityBaseline] = None,
    ) -> ProductivityScore:
        """Compute a score without persisting it."""
        now = as_of or self.clock()
        today = now.date()
        metrics = await self.store.get_activity_metrics(wallet.wallet_id, until=today)
        stages = await self.store.get_adoption_stages(wallet.wallet_id)
        transactions = await self.store.get_transactions(wallet.wallet_id)

        retention = retention_score(wallet, metrics, today)
        adoption = adoption_score(stages)
        activity = activity_score(metrics, today, baseline or self.default_baseline)
        diversity = diversity_score(transactions)
        total = min(max(self.combine(retention, adoption, activity, diversity), 0.0), 100.0)

        return ProductivityScore(
            wallet_id=wallet.wallet_id,
            retention_score=retention,
            adoption_score=adoption,
            activity_score=activity,
            diversity_score=diversity,
            total_score=total,
            status=classify_status(total, self.thresholds),
            risk_level=classify_risk(total, self.thresholds),
            calculated_at=now,
        )

    async def recompute(
        self,
        wallet_id: str,
        as_of: Optional[datetime] = None,
        baseline: Optional[ActivityBaseline] = None,
    ) -> ProductivityScore:
        """
        Recompute and overwrite the wallet's productivity score.

        Args:
            wallet_id: Wallet to score
            as_of: Reference time (defaults to now)
            baseline: Activity baseline; the project's median is used when omitted

        Raises:
            NotFoundError: If the wallet does not exist
        """
        wallet = await self.store.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError("wallet", wallet_id)

        if baseline is None:
            baseline = await self.compute_baseline(wallet.project_id, as_of)

        score = await self.score_wallet(wallet, as_of, baseline)
        await self.store.save_productivity_score(score)
        self.logger.info("score_recomputed", total=round(score.total_score, 2), status=score.status)
        return score

    async def recompute_project(self, project_id: str, as_of: Optional[datetime] = None) -> BatchResult:
        """Score every wallet of a project against one shared baseline."""
        batch = BatchResult(operation="recompute_scores")
        baseline = await self.compute_baseline(project_id, as_of)

        for wallet in await self.store.get_project_wallets(project_id):
            try:
                score = await self.score_wallet(wallet, as_of, baseline)
                await self.store.save_productivity_score(score)
            except Exception as e:
                self.logger.exception("score_recompute_failed", wallet_id=wallet.wallet_id)
                batch.fail(wallet.wallet_id, f"{e.__class__.__name__}: {e}")
                continue
            batch.succeed(wallet.wallet_id, score.status, data={"total_score": round(score.total_score, 2)})

        batch.finish()
        log_batch_summary("productivity_scorer", batch.operation, batch.succeeded,
                          batch.skipped, batch.failed, batch.duration_seconds)
        return batch

    async def get_project_summary(self, project_id: str) -> ProductivitySummary:
        wallets = await self.store.get_project_wallets(project_id)
        scores = await self.store.get_project_scores(project_id)
        return summarize_scores(project_id, len(wallets), scores)


def summarize_scores(project_id: str, total_wallets: int, scores: List[ProductivityScore]) -> ProductivitySummary:
    def avg(values: List[float]) -> float:
        return round(sum(values) / len(values), 2) if values else 0.0

    status = Counter(s.status for s in scores)
    risk = Counter(s.risk_level for s in scores)
    return ProductivitySummary(
        project_id=project_id,
        total_wallets=total_wallets,
        scored_wallets=len(scores),
        avg_total_score=avg([s.total_score for s in scores]),
        avg_retention_score=avg([s.retention_score for s in scores]),
        avg_adoption_score=avg([s.adoption_score for s in scores]),
        avg_activity_score=avg([s.activity_score for s in scores]),
        avg_diversity_score=avg([s.diversity_score for s in scores]),
        status_distribution={k: status.get(k, 0) for k in ("healthy", "at_risk", "churn")},
        risk_distribution={k: risk.get(k, 0) for k in ("low", "medium", "high")},
        health_percentage=round(status.get("healthy", 0) / len(scores) * 100, 2) if scores else 0.0,
    )
