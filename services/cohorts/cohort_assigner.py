"""
Signup cohorts.

Weekly cohorts start on Monday and monthly cohorts on the first day of the
month, both in UTC. A wallet joins exactly one cohort of each type, decided by
its creation time, and is never reassigned.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

import structlog

from services.batch import BatchResult
from services.errors import NotFoundError
from services.storage.models import CohortType, Wallet, WalletCohort
from services.storage.repository import AnalyticsRepository
from wallet_analytics.common.logging_setup import log_batch_summary

logger = structlog.get_logger()

DateLike = Union[date, datetime]


def _utc_date(t: DateLike) -> date:
    if isinstance(t, datetime):
        if t.tzinfo is not None:
            t = t.astimezone(timezone.utc)
        return t.date()
    return t


def week_start(t: DateLike) -> date:
    """Most recent Monday at or before ``t``."""
    day = _utc_date(t)
    return day - timedelta(days=day.weekday())


def month_start(t: DateLike) -> date:
    """First calendar day of ``t``'s month."""
    return _utc_date(t).replace(day=1)


def period_start(cohort_type: CohortType, t: DateLike) -> date:
    return week_start(t) if cohort_type == CohortType.WEEKLY else month_start(t)


def next_period(cohort_type: CohortType, period: date) -> date:
    if cohort_type == CohortType.WEEKLY:
        return period + timedelta(days=7)
    if period.month == 12:
        return date(period.year + 1, 1, 1)
    return date(period.year, period.month + 1, 1)


def _as_utc_datetime(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


@dataclass
class CohortAssignmentResult:
    wallet_id: str
    cohorts: Dict[CohortType, int] = field(default_factory=dict)
    newly_assigned: List[CohortType] = field(default_factory=list)


@dataclass
class CohortInfo:
    cohort: WalletCohort
    wallet_ids: List[str]

    @property
    def actual_wallet_count(self) -> int:
        return len(self.wallet_ids)


@dataclass
class CohortStatistics:
    cohort_type: CohortType
    total_cohorts: int
    total_wallets: int
    avg_wallets_per_cohort: float
    earliest_period: Optional[date]
    latest_period: Optional[date]


class CohortAssigner:
    """Buckets wallets into weekly and monthly signup cohorts."""

    def __init__(self, store: AnalyticsRepository):
        self.store = store
        self.logger = logger.bind(component="cohort_assigner")

    async def _assign_wallet(self, wallet: Wallet,
                             cohort_types=(CohortType.WEEKLY, CohortType.MONTHLY)) -> CohortAssignmentResult:
        result = CohortAssignmentResult(wallet_id=wallet.wallet_id)
        for cohort_type in cohort_types:
            existing = await self.store.get_wallet_assignment(wallet.wallet_id, cohort_type)
            if existing is not None:
                result.cohorts[cohort_type] = existing.cohort_id
                continue

            cohort = await self.store.get_or_create_cohort(cohort_type, period_start(cohort_type, wallet.created_at))
            if await self.store.assign_wallet(wallet.wallet_id, cohort):
                result.newly_assigned.append(cohort_type)
                result.cohorts[cohort_type] = cohort.cohort_id
            else:
                # Lost a race with another assigner; keep whatever it recorded
                existing = await self.store.get_wallet_assignment(wallet.wallet_id, cohort_type)
                result.cohorts[cohort_type] = existing.cohort_id
        return result

    async def assign(self, wallet_id: str) -> CohortAssignmentResult:
        """Assign a wallet to its weekly and monthly cohorts; no-op when already assigned."""
        wallet = await self.store.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError("wallet", wallet_id)
        result = await self._assign_wallet(wallet)
        if result.newly_assigned:
            self.logger.info("wallet_assigned", cohort_types=[t.value for t in result.newly_assigned])
        return result

    async def process_unassigned(self) -> BatchResult:
        """Assign every wallet missing a weekly or monthly cohort. Safe to re-run."""
        batch = BatchResult(operation="process_unassigned_cohorts")

        pending: Dict[str, Wallet] = {}
        for cohort_type in (CohortType.WEEKLY, CohortType.MONTHLY):
            for wallet in await self.store.get_unassigned_wallets(cohort_type):
                pending.setdefault(wallet.wallet_id, wallet)

        for wallet in pending.values():
            try:
                result = await self._assign_wallet(wallet)
            except Exception as e:
                self.logger.exception("cohort_assignment_failed", wallet_id=wallet.wallet_id)
                batch.fail(wallet.wallet_id, f"{e.__class__.__name__}: {e}")
                continue
            if result.newly_assigned:
                batch.succeed(wallet.wallet_id, ",".join(t.value for t in result.newly_assigned))
            else:
                batch.skip(wallet.wallet_id, "already assigned")

        batch.finish()
        log_batch_summary("cohort_assigner", batch.operation, batch.succeeded,
                          batch.skipped, batch.failed, batch.duration_seconds)
        return batch

    async def create_for_range(self, start: DateLike, end: DateLike, cohort_type: Union[CohortType, str]) -> BatchResult:
        """
        Create cohorts for every period overlapping ``[start, end]`` and backfill wallets.

        Args:
            start: First day of the range
            end: Last day of the range (inclusive)
            cohort_type: "weekly" or "monthly"

        Returns:
            One outcome per period, with the cohort id and wallets assigned

        Raises:
            ValueError: If the cohort type or range is invalid
        """
        cohort_type = CohortType(cohort_type)
        first, last = _utc_date(start), _utc_date(end)
        if last < first:
            raise ValueError("end must not be before start")

        batch = BatchResult(operation=f"create_{cohort_type.value}_cohorts")
        period = period_start(cohort_type, first)
        while period <= last:
            following = next_period(cohort_type, period)
            cohort = await self.store.get_or_create_cohort(cohort_type, period)

            assigned = 0
            wallets = await self.store.get_wallets_created_between(
                _as_utc_datetime(period), _as_utc_datetime(following)
            )
            for wallet in wallets:
                result = await self._assign_wallet(wallet, cohort_types=(cohort_type,))
                assigned += len(result.newly_assigned)

            batch.succeed(
                period.isoformat(),
                f"{assigned} wallets assigned",
                data={"cohort_id": cohort.cohort_id, "wallets_assigned": assigned},
            )
            period = following

        return batch.finish()

    async def get_cohort(self, cohort_id: int) -> CohortInfo:
        cohort = await self.store.get_cohort(cohort_id)
        if cohort is None:
            raise NotFoundError("cohort", cohort_id)
        wallet_ids = await self.store.get_cohort_wallet_ids(cohort_id)
        return CohortInfo(cohort=cohort, wallet_ids=wallet_ids)

    async def list_cohorts(self, cohort_type: Optional[Union[CohortType, str]] = None,
                           limit: int = 50) -> List[WalletCohort]:
        cohort_type = CohortType(cohort_type) if cohort_type else None
        return await self.store.list_cohorts(cohort_type, limit)

    async def get_statistics(self) -> Dict[CohortType, CohortStatistics]:
        stats = {}
        for cohort_type in (CohortType.WEEKLY, CohortType.MONTHLY):
            cohorts = await self.store.list_cohorts(cohort_type)
            total_wallets = sum(c.actual_wallet_count for c in cohorts)
            periods = [c.cohort_period for c in cohorts]
            stats[cohort_type] = CohortStatistics(
                cohort_type=cohort_type,
                total_cohorts=len(cohorts),
                total_wallets=total_wallets,
                avg_wallets_per_cohort=round(total_wallets / len(cohorts), 2) if cohorts else 0.0,
                earliest_period=min(periods) if periods else None,
                latest_period=max(periods) if periods else None,
            )
        return stats
