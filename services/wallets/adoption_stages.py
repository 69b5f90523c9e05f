"""
Adoption funnel state machine.

Stages are walked in ``FUNNEL_STAGES`` order against the wallet's lifetime
activity. Evaluation stops at the first stage whose criteria fail, so a later
stage is never achieved before an earlier one, and achieved rows are never
rewritten.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import numpy as np
import structlog

from services.batch import BatchResult
from services.errors import ConcurrentUpdateConflictError, NotFoundError
from services.locks import WalletLockRegistry
from services.storage.models import (
    FUNNEL_STAGES,
    STAGE_INDEX,
    AdoptionStage,
    ProcessedTransaction,
    Wallet,
    WalletAdoptionStage,
    utcnow,
)
from services.storage.repository import AnalyticsRepository
from wallet_analytics.common.logging_setup import log_batch_summary

logger = structlog.get_logger()


@dataclass(frozen=True)
class StageCriteria:
    """Thresholds a wallet must meet, all at once, to achieve a stage."""
    min_transactions: int = 0
    min_unique_types: int = 0
    min_active_days: int = 0
    min_span_days: int = 0
    min_volume_zatoshi: int = 0


DEFAULT_STAGE_CRITERIA: Dict[AdoptionStage, StageCriteria] = {
    AdoptionStage.FIRST_TX: StageCriteria(min_transactions=1),
    AdoptionStage.FEATURE_USAGE: StageCriteria(min_transactions=3, min_unique_types=2),
    AdoptionStage.RECURRING: StageCriteria(min_transactions=5, min_active_days=3, min_span_days=7),
    AdoptionStage.HIGH_VALUE: StageCriteria(
        min_transactions=10, min_active_days=7, min_span_days=30, min_volume_zatoshi=1_000_000
    ),
}


@dataclass
class ActivitySnapshot:
    """Lifetime activity aggregates used for stage evaluation."""
    total_transactions: int = 0
    unique_tx_types: int = 0
    active_days: int = 0
    total_volume_zatoshi: int = 0
    first_tx_at: Optional[datetime] = None
    last_tx_at: Optional[datetime] = None

    @property
    def span(self) -> timedelta:
        if self.first_tx_at is None or self.last_tx_at is None:
            return timedelta(0)
        return self.last_tx_at - self.first_tx_at

    @property
    def span_days(self) -> float:
        return self.span.total_seconds() / 86400

    @classmethod
    def from_transactions(cls, transactions: List[ProcessedTransaction]) -> "ActivitySnapshot":
        if not transactions:
            return cls()
        times = [tx.block_time for tx in transactions]
        return cls(
            total_transactions=len(transactions),
            unique_tx_types=len({tx.tx_type for tx in transactions}),
            active_days=len({tx.activity_date for tx in transactions}),
            total_volume_zatoshi=sum(abs(tx.value_zatoshi) for tx in transactions),
            first_tx_at=min(times),
            last_tx_at=max(times),
        )


def _ratios(criteria: StageCriteria, snapshot: ActivitySnapshot) -> List[float]:
    pairs = [
        (snapshot.total_transactions, criteria.min_transactions),
        (snapshot.unique_tx_types, criteria.min_unique_types),
        (snapshot.active_days, criteria.min_active_days),
        (snapshot.span_days, criteria.min_span_days),
        (snapshot.total_volume_zatoshi, criteria.min_volume_zatoshi),
    ]
    return [actual / threshold for actual, threshold in pairs if threshold > 0]


def criteria_met(criteria: StageCriteria, snapshot: ActivitySnapshot) -> bool:
    return (
        snapshot.total_transactions >= criteria.min_transactions
        and snapshot.unique_tx_types >= criteria.min_unique_types
        and snapshot.active_days >= criteria.min_active_days
        and snapshot.span >= timedelta(days=criteria.min_span_days)
        and snapshot.total_volume_zatoshi >= criteria.min_volume_zatoshi
    )


def conversion_probability(criteria: StageCriteria, snapshot: ActivitySnapshot) -> float:
    """Confidence in [0, 1]: 0.5 exactly at threshold, approaching 1 with excess."""
    ratios = _ratios(criteria, snapshot)
    if not ratios:
        return 1.0
    if min(ratios) <= 0:
        return 0.0
    excess = math.exp(sum(math.log(r) for r in ratios) / len(ratios))
    return round(min(max(1 - 0.5 / excess, 0.0), 1.0), 4)


def stage_readiness(criteria: StageCriteria, snapshot: ActivitySnapshot) -> float:
    """Fraction of the way to the weakest criterion of an unachieved stage."""
    ratios = _ratios(criteria, snapshot)
    if not ratios:
        return 1.0
    return round(min(min(r, 1.0) for r in ratios), 4)


@dataclass
class AdoptionStatus:
    wallet_id: str
    current_stage: AdoptionStage
    next_stage: Optional[AdoptionStage]
    progress_percentage: float
    next_stage_readiness: Optional[float]
    stages: List[WalletAdoptionStage] = field(default_factory=list)


@dataclass
class FunnelStageSummary:
    stage: AdoptionStage
    total_wallets: int
    achieved_wallets: int
    conversion_rate: float
    avg_time_to_achieve_hours: Optional[float]
    avg_conversion_probability: Optional[float]


class _StaleStageState(Exception):
    """A stage row was achieved by another writer between read and write."""


class AdoptionStageEngine:
    """Tracks each wallet's progress through the adoption funnel."""

    def __init__(
        self,
        store: AnalyticsRepository,
        locks: Optional[WalletLockRegistry] = None,
        criteria: Optional[Dict[AdoptionStage, StageCriteria]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.locks = locks or WalletLockRegistry()
        self.criteria = {**DEFAULT_STAGE_CRITERIA, **(criteria or {})}
        self.clock = clock
        self.logger = logger.bind(component="adoption_stage_engine")

    async def _get_wallet(self, wallet_id: str) -> Wallet:
        wallet = await self.store.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError("wallet", wallet_id)
        return wallet

    async def build_snapshot(self, wallet_id: str) -> ActivitySnapshot:
        transactions = await self.store.get_transactions(wallet_id)
        return ActivitySnapshot.from_transactions(transactions)

    async def initialize(self, wallet_id: str) -> List[WalletAdoptionStage]:
        """Create the stage rows; ``created`` is achieved at wallet creation."""
        wallet = await self._get_wallet(wallet_id)
        rows = [
            WalletAdoptionStage(
                wallet_id=wallet_id,
                stage=AdoptionStage.CREATED,
                achieved_at=wallet.created_at,
                time_to_achieve_hours=0.0,
                conversion_probability=1.0,
            )
        ]
        rows += [WalletAdoptionStage(wallet_id=wallet_id, stage=stage) for stage in FUNNEL_STAGES[1:]]

        async with self.locks.hold(wallet_id):
            await self.store.ensure_stage_rows(rows)
            return await self.store.get_adoption_stages(wallet_id)

    async def update_stages(self, wallet_id: str, as_of: Optional[datetime] = None) -> List[WalletAdoptionStage]:
        """
        Re-evaluate the funnel for one wallet.

        Args:
            wallet_id: Wallet to evaluate
            as_of: Evaluation moment recorded as ``achieved_at`` (defaults to now)

        Returns:
            Stages newly achieved by this call, in funnel order

        Raises:
            NotFoundError: If the wallet does not exist
            ConcurrentUpdateConflictError: If a concurrent writer won twice in a row
        """
        wallet = await self._get_wallet(wallet_id)
        now = as_of or self.clock()

        async with self.locks.hold(wallet_id):
            for attempt in range(2):
                try:
                    newly = await self._evaluate(wallet, now)
                    break
                except _StaleStageState:
                    self.logger.warning("stage_write_conflict", attempt=attempt + 1)
            else:
                raise ConcurrentUpdateConflictError(f"stage update for wallet {wallet_id} lost twice")

        if newly:
            self.logger.info("stages_achieved", stages=[s.stage.value for s in newly])
        return newly

    async def _evaluate(self, wallet: Wallet, now: datetime) -> List[WalletAdoptionStage]:
        rows = {s.stage: s for s in await self.store.get_adoption_stages(wallet.wallet_id)}
        if len(rows) < len(FUNNEL_STAGES):
            await self.initialize(wallet.wallet_id)
            rows = {s.stage: s for s in await self.store.get_adoption_stages(wallet.wallet_id)}

        snapshot = await self.build_snapshot(wallet.wallet_id)
        previous_at = rows[AdoptionStage.CREATED].achieved_at or wallet.created_at
        newly: List[WalletAdoptionStage] = []

        for stage in FUNNEL_STAGES[1:]:
            row = rows[stage]
            if row.achieved:
                previous_at = row.achieved_at
                continue

            criteria = self.criteria[stage]
            if not criteria_met(criteria, snapshot):
                break

            achieved_at = max(now, previous_at)
            achieved = WalletAdoptionStage(
                wallet_id=wallet.wallet_id,
                stage=stage,
                achieved_at=achieved_at,
                time_to_achieve_hours=round((achieved_at - wallet.created_at).total_seconds() / 3600, 2),
                conversion_probability=conversion_probability(criteria, snapshot),
            )
            if not await self.store.mark_stage_achieved(achieved):
                raise _StaleStageState(stage.value)

            newly.append(achieved)
            previous_at = achieved_at

        return newly

    async def get_status(self, wallet_id: str) -> AdoptionStatus:
        """Current and next stage, progress percentage and the full stage list."""
        await self._get_wallet(wallet_id)
        stages = await self.store.get_adoption_stages(wallet_id)
        if not stages:
            stages = await self.initialize(wallet_id)

        achieved = [s for s in stages if s.achieved]
        current = max((s.stage for s in achieved), key=lambda st: STAGE_INDEX[st], default=AdoptionStage.CREATED)
        next_index = STAGE_INDEX[current] + 1
        next_stage = FUNNEL_STAGES[next_index] if next_index < len(FUNNEL_STAGES) else None

        readiness = None
        if next_stage is not None:
            snapshot = await self.build_snapshot(wallet_id)
            readiness = stage_readiness(self.criteria[next_stage], snapshot)

        return AdoptionStatus(
            wallet_id=wallet_id,
            current_stage=current,
            next_stage=next_stage,
            progress_percentage=round(len(achieved) / len(FUNNEL_STAGES) * 100, 2),
            next_stage_readiness=readiness,
            stages=stages,
        )

    async def get_project_funnel(self, project_id: str) -> List[FunnelStageSummary]:
        """Per-stage achieved counts, rates, and averages over a project's wallets."""
        wallets = await self.store.get_project_wallets(project_id)
        stages_by_wallet = await self.store.get_project_stages(project_id)
        return summarize_funnel(len(wallets), stages_by_wallet)

    async def get_time_to_stage_metrics(self, project_id: str) -> Dict[str, Dict[str, Optional[float]]]:
        """Distribution of hours from wallet creation to each stage."""
        stages_by_wallet = await self.store.get_project_stages(project_id)
        metrics = {}
        for stage in FUNNEL_STAGES[1:]:
            hours = [
                s.time_to_achieve_hours
                for rows in stages_by_wallet.values()
                for s in rows
                if s.stage == stage and s.achieved and s.time_to_achieve_hours is not None
            ]
            if hours:
                values = np.array(hours, dtype=float)
                metrics[stage.value] = {
                    "wallets": len(hours),
                    "avg_hours": round(float(values.mean()), 2),
                    "median_hours": round(float(np.median(values)), 2),
                    "min_hours": round(float(values.min()), 2),
                    "max_hours": round(float(values.max()), 2),
                }
            else:
                metrics[stage.value] = {
                    "wallets": 0, "avg_hours": None, "median_hours": None, "min_hours": None, "max_hours": None,
                }
        return metrics

    async def recompute_project(self, project_id: str, as_of: Optional[datetime] = None) -> BatchResult:
        """Batch re-evaluation of every wallet in a project."""
        result = BatchResult(operation="recompute_stages")
        for wallet in await self.store.get_project_wallets(project_id):
            try:
                newly = await self.update_stages(wallet.wallet_id, as_of=as_of)
            except ConcurrentUpdateConflictError as e:
                result.fail(wallet.wallet_id, str(e))
                continue
            except Exception as e:
                self.logger.exception("stage_recompute_failed", wallet_id=wallet.wallet_id)
                result.fail(wallet.wallet_id, f"{e.__class__.__name__}: {e}")
                continue
            if newly:
                result.succeed(wallet.wallet_id, ",".join(s.stage.value for s in newly))
            else:
                result.skip(wallet.wallet_id, "no new stages")
        result.finish()
        log_batch_summary("adoption_stage_engine", result.operation, result.succeeded,
                          result.skipped, result.failed, result.duration_seconds)
        return result


def summarize_funnel(
    total_wallets: int,
    stages_by_wallet: Dict[str, List[WalletAdoptionStage]],
) -> List[FunnelStageSummary]:
    """Fold stage rows into one summary per funnel stage.

    Every wallet counts as ``created``, with or without stage rows.
    """
    summaries = []
    for stage in FUNNEL_STAGES:
        achieved = [
            s for rows in stages_by_wallet.values() for s in rows
            if s.stage == stage and s.achieved
        ]
        reached = total_wallets if stage == AdoptionStage.CREATED else len(achieved)
        hours = [s.time_to_achieve_hours for s in achieved if s.time_to_achieve_hours is not None]
        probabilities = [s.conversion_probability for s in achieved if s.conversion_probability is not None]
        summaries.append(FunnelStageSummary(
            stage=stage,
            total_wallets=total_wallets,
            achieved_wallets=reached,
            conversion_rate=round(reached / total_wallets * 100, 2) if total_wallets else 0.0,
            avg_time_to_achieve_hours=round(sum(hours) / len(hours), 2) if hours else None,
            avg_conversion_probability=round(sum(probabilities) / len(probabilities), 4) if probabilities else None,
        ))
    return summaries
