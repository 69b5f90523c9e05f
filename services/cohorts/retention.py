"""Week-over-week retention for signup cohorts."""

from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from services.batch import BatchResult
from services.errors import NotFoundError
from services.storage.models import CohortType, WalletCohort, utcnow
from services.storage.repository import AnalyticsRepository

logger = structlog.get_logger()

RETENTION_WEEKS = (1, 2, 3, 4)


class RetentionCalculator:
    """Computes ``retention_week_1..4`` for cohorts.

    Week ``w`` covers days ``[(w-1)*7, w*7)`` after the cohort period start.
    A week that has not started yet is left as ``None``.
    """

    def __init__(self, store: AnalyticsRepository, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock
        self.logger = logger.bind(component="retention_calculator")

    async def _active_wallets(self, wallet_ids: List[str], start: date, end: date) -> int:
        active = 0
        for wallet_id in wallet_ids:
            metrics = await self.store.get_activity_metrics(wallet_id, since=start, until=end)
            if any(m.is_active for m in metrics):
                active += 1
        return active

    async def compute(self, cohort: WalletCohort, as_of: Optional[date] = None) -> Dict[int, Optional[float]]:
        today = as_of or self.clock().date()
        wallet_ids = await self.store.get_cohort_wallet_ids(cohort.cohort_id)

        retention: Dict[int, Optional[float]] = {}
        for week in RETENTION_WEEKS:
            start = cohort.cohort_period + timedelta(days=(week - 1) * 7)
            if start > today or not wallet_ids:
                retention[week] = None
                continue
            active = await self._active_wallets(wallet_ids, start, start + timedelta(days=6))
            retention[week] = round(active / len(wallet_ids) * 100, 2)
        return retention

    async def calculate_cohort_retention(self, cohort_id: int, as_of: Optional[date] = None) -> Dict[int, Optional[float]]:
        """Recompute and persist retention for one cohort."""
        cohort = await self.store.get_cohort(cohort_id)
        if cohort is None:
            raise NotFoundError("cohort", cohort_id)
        retention = await self.compute(cohort, as_of)
        await self.store.update_cohort_retention(cohort_id, retention)
        return retention

    async def calculate_all(self, cohort_type: Optional[Union[CohortType, str]] = None,
                            as_of: Optional[date] = None) -> BatchResult:
        batch = BatchResult(operation="calculate_retention")
        cohort_type = CohortType(cohort_type) if cohort_type else None
        for cohort in await self.store.list_cohorts(cohort_type):
            if cohort.actual_wallet_count == 0:
                batch.skip(str(cohort.cohort_id), "empty cohort")
                continue
            retention = await self.compute(cohort, as_of)
            await self.store.update_cohort_retention(cohort.cohort_id, retention)
            batch.succeed(str(cohort.cohort_id), data={str(k): v for k, v in retention.items()})

        self.logger.info("retention_calculated", cohorts=batch.succeeded, skipped=batch.skipped)
        return batch.finish()

    async def get_heatmap(self, cohort_type: Union[CohortType, str] = CohortType.WEEKLY,
                          limit: int = 20) -> List[Dict[str, Any]]:
        """Stored retention per cohort, oldest period first, for heatmap display."""
        cohorts = await self.store.list_cohorts(CohortType(cohort_type), limit)
        rows = []
        for cohort in reversed(cohorts):
            row = {
                "cohort_id": cohort.cohort_id,
                "cohort_period": cohort.cohort_period,
                "wallet_count": cohort.actual_wallet_count,
            }
            row.update({f"week_{w}": cohort.retention.get(w) for w in RETENTION_WEEKS})
            rows.append(row)
        return rows
