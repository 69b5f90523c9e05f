"""
Project dashboard composition.

Every wallet-level figure passes through ``PrivacyEnforcementService.release``
before it is aggregated, so the same code serves the owning project and
outside readers. Results are cached per (project, view, parameters); a
recompute that runs past its budget returns the last cached value marked
stale, or an empty partial result, instead of blocking.
"""

import asyncio
import dataclasses
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import pandas as pd
import structlog

from services.cohorts.cohort_assigner import month_start, week_start
from services.dashboard.cache import CacheKey, DashboardCache, make_key
from services.errors import NotFoundError
from services.privacy.enforcement import PrivacyEnforcementService, Requester, View
from services.storage.models import FUNNEL_STAGES, STAGE_INDEX, AdoptionStage, Wallet, utcnow
from services.storage.repository import AnalyticsRepository

logger = structlog.get_logger()

T = TypeVar("T")

ZATOSHI_PER_ZEC = 100_000_000
GRANULARITIES = ("day", "week")
EXPORT_FORMATS = ("json", "csv")
WEEKLY_COHORTS_SHOWN = 8
MONTHLY_COHORTS_SHOWN = 6

SCORE_FIELDS = ("total_score", "retention_score", "adoption_score", "activity_score", "diversity_score")


@dataclass
class DashboardSnapshot:
    project_id: str
    overview: Dict[str, Any]
    productivity: Dict[str, Any]
    cohorts: List[Dict[str, Any]]
    adoption_funnel: List[Dict[str, Any]]
    generated_at: datetime = field(default_factory=utcnow)
    stale: bool = False
    partial: bool = False
    cache_age_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        return data


@dataclass
class TimeSeries:
    project_id: str
    granularity: str
    points: List[Dict[str, Any]]
    generated_at: datetime = field(default_factory=utcnow)
    stale: bool = False
    partial: bool = False
    cache_age_seconds: Optional[float] = None


def _mean(rows: List[Dict[str, Any]], key: str) -> float:
    values = [r[key] for r in rows if isinstance(r.get(key), (int, float))]
    return round(sum(values) / len(values), 2) if values else 0.0


def build_overview(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    total_volume = sum(r.get("total_volume_zatoshi", 0) for r in rows)
    return {
        "total_wallets": len(rows),
        "active_wallets": sum(1 for r in rows if r.get("active_days", 0) > 0),
        "total_transactions": sum(r.get("transaction_count", 0) for r in rows),
        "total_volume_zatoshi": total_volume,
        "total_volume_zec": total_volume / ZATOSHI_PER_ZEC,
        "avg_productivity_score": _mean([r for r in rows if r.get("status")], "total_score"),
    }


def build_productivity(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    scored = [r for r in rows if r.get("status")]
    statuses = [r["status"] for r in scored]
    summary = {"scored_wallets": len(scored)}
    summary.update({f"avg_{name}": _mean(scored, name) for name in SCORE_FIELDS})
    summary.update({
        "healthy_wallets": statuses.count("healthy"),
        "at_risk_wallets": statuses.count("at_risk"),
        "churn_wallets": statuses.count("churn"),
        "health_percentage": round(statuses.count("healthy") / len(scored) * 100, 2) if scored else 0.0,
    })
    return summary


def build_cohorts(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Signup cohorts of the visible wallets, newest first per type."""
    if not rows:
        return []
    df = pd.DataFrame(rows)
    scored = df["status"].notna() if "status" in df else pd.Series(False, index=df.index)
    score = pd.to_numeric(df["total_score"], errors="coerce") if "total_score" in df else float("nan")
    df["total_score"] = pd.Series(score, index=df.index).where(scored)
    df["active"] = df["active_days"] > 0

    summary = []
    for cohort_type, column, shown in (
        ("weekly", "cohort_week", WEEKLY_COHORTS_SHOWN),
        ("monthly", "cohort_month", MONTHLY_COHORTS_SHOWN),
    ):
        grouped = df.groupby(column).agg(
            wallet_count=("active_days", "size"),
            active_wallets=("active", "sum"),
            avg_active_days=("active_days", "mean"),
            avg_total_score=("total_score", "mean"),
        ).sort_index(ascending=False).head(shown)

        for period, row in grouped.iterrows():
            summary.append({
                "cohort_type": cohort_type,
                "cohort_period": period,
                "wallet_count": int(row["wallet_count"]),
                "active_wallets": int(row["active_wallets"]),
                "avg_active_days": round(float(row["avg_active_days"]), 2),
                "avg_total_score": None if pd.isna(row["avg_total_score"]) else round(float(row["avg_total_score"]), 2),
            })
    return summary


def build_funnel(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Wallets at or past each stage, from each row's current stage."""
    reached = [STAGE_INDEX[AdoptionStage(r.get("current_stage", AdoptionStage.CREATED.value))] for r in rows]
    funnel = []
    previous = len(rows)
    for index, stage in enumerate(FUNNEL_STAGES):
        count = sum(1 for r in reached if r >= index)
        funnel.append({
            "stage": stage.value,
            "wallet_count": count,
            "rate_from_total": round(count / len(rows) * 100, 2) if rows else 0.0,
            "rate_from_previous": round(count / previous * 100, 2) if previous else 0.0,
        })
        previous = count
    return funnel


class DashboardAggregationService:
    """Composes and caches per-project dashboard views."""

    def __init__(
        self,
        store: AnalyticsRepository,
        privacy: PrivacyEnforcementService,
        cache: Optional[DashboardCache] = None,
        recompute_budget: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.privacy = privacy
        self.cache = cache or DashboardCache()
        self.recompute_budget = recompute_budget
        self.clock = clock
        self.logger = logger.bind(component="dashboard_aggregation")

        privacy.on_mode_change(lambda wallet: self.clear_cache(wallet.project_id))

    async def _project_wallets(self, project_id: str) -> List[Wallet]:
        wallets = await self.store.get_project_wallets(project_id)
        if not wallets:
            raise NotFoundError("project", project_id)
        return wallets

    async def _wallet_record(self, wallet: Wallet) -> Dict[str, Any]:
        metrics = await self.store.get_activity_metrics(wallet.wallet_id)
        stages = await self.store.get_adoption_stages(wallet.wallet_id)
        score = await self.store.get_productivity_score(wallet.wallet_id)

        achieved = [s.stage for s in stages if s.achieved]
        current = max(achieved, key=lambda st: STAGE_INDEX[st], default=AdoptionStage.CREATED)

        record = {
            "wallet_id": wallet.wallet_id,
            "project_id": wallet.project_id,
            "address": wallet.address,
            "active_days": sum(1 for m in metrics if m.is_active),
            "transaction_count": sum(m.transaction_count for m in metrics),
            "total_volume_zatoshi": sum(m.total_volume_zatoshi for m in metrics),
            "current_stage": current.value,
            "cohort_week": week_start(wallet.created_at).isoformat(),
            "cohort_month": month_start(wallet.created_at).isoformat(),
        }
        if score is not None:
            record.update({name: getattr(score, name) for name in SCORE_FIELDS})
            record["status"] = score.status
            record["risk_level"] = score.risk_level
        return record

    async def _visible_rows(self, project_id: str, requester: Requester) -> List[Dict[str, Any]]:
        records = [await self._wallet_record(w) for w in await self._project_wallets(project_id)]
        released = await self.privacy.release(records, requester)
        return [r["metrics"] if r.get("anonymized") else r for r in released]

    async def _compose(self, project_id: str, requester: Requester) -> DashboardSnapshot:
        rows = await self._visible_rows(project_id, requester)
        return DashboardSnapshot(
            project_id=project_id,
            overview=build_overview(rows),
            productivity=build_productivity(rows),
            cohorts=build_cohorts(rows),
            adoption_funnel=build_funnel(rows),
            generated_at=self.clock(),
        )

    async def _cached(
        self,
        key: CacheKey,
        compute: Callable[[], Awaitable[T]],
        placeholder: Callable[[], T],
        cacheable: bool,
    ) -> T:
        if cacheable:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        task = self.cache.inflight(key) if cacheable else None
        if task is None:
            task = asyncio.ensure_future(self._recompute(key, compute, cacheable))
            task.add_done_callback(self._report_failure)
            if cacheable:
                self.cache.track(key, task)

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.recompute_budget)
        except asyncio.TimeoutError:
            self.logger.warning("recompute_over_budget", view=key[1], budget_seconds=self.recompute_budget)

        stale = self.cache.get_stale(key) if cacheable else None
        if stale is not None:
            value, age = stale
            return dataclasses.replace(value, stale=True, cache_age_seconds=round(age, 1))
        return placeholder()

    async def _recompute(self, key: CacheKey, compute: Callable[[], Awaitable[T]], cacheable: bool) -> T:
        value = await compute()
        if cacheable:
            self.cache.set(key, value)
        return value

    def _report_failure(self, task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            self.logger.warning("recompute_failed", error=str(task.exception()))

    @staticmethod
    def _requester(project_id: str, requester: Optional[Requester]) -> Requester:
        return requester or Requester(project_id=project_id)

    async def get_dashboard(self, project_id: str, requester: Optional[Requester] = None) -> DashboardSnapshot:
        """
        Overview, productivity, cohort and funnel summaries for one project.

        Args:
            project_id: Project to summarize
            requester: Reader context (defaults to the owning project)

        Returns:
            DashboardSnapshot, flagged ``stale`` or ``partial`` when the recompute ran out of time

        Raises:
            NotFoundError: If the project has no wallets
        """
        requester = self._requester(project_id, requester)
        key = make_key(project_id, "dashboard", {"requester": requester.cache_key})
        return await self._cached(
            key,
            lambda: self._compose(project_id, requester),
            lambda: DashboardSnapshot(project_id=project_id, overview={}, productivity={}, cohorts=[],
                                      adoption_funnel=[], generated_at=self.clock(), partial=True),
            cacheable=requester.buyer_id is None,
        )

    async def _timeseries(self, project_id: str, granularity: str, days: int,
                          requester: Requester, as_of: date) -> TimeSeries:
        wallets = await self._project_wallets(project_id)
        visible = {w.wallet_id for w in wallets if await self.privacy.resolve_view(w, requester) != View.EXCLUDED}

        start = as_of - timedelta(days=days - 1)
        if granularity == "week":
            start = week_start(start)
        buckets = pd.date_range(start, as_of, freq="D" if granularity == "day" else "W-MON")
        points = {b.date(): {"active_wallets": 0, "transactions": 0, "volume_zatoshi": 0} for b in buckets}

        metrics = [
            m for m in await self.store.get_project_activity(project_id, since=start, until=as_of)
            if m.wallet_id in visible
        ]
        if metrics:
            df = pd.DataFrame([
                {"wallet_id": m.wallet_id, "activity_date": m.activity_date, "is_active": m.is_active,
                 "transaction_count": m.transaction_count, "total_volume_zatoshi": m.total_volume_zatoshi}
                for m in metrics
            ])
            df["bucket"] = df["activity_date"] if granularity == "day" else df["activity_date"].map(week_start)
            active = df[df["is_active"]].groupby("bucket")["wallet_id"].nunique()
            totals = df.groupby("bucket")[["transaction_count", "total_volume_zatoshi"]].sum()
            for bucket, row in totals.iterrows():
                points[bucket] = {
                    "active_wallets": int(active.get(bucket, 0)),
                    "transactions": int(row["transaction_count"]),
                    "volume_zatoshi": int(row["total_volume_zatoshi"]),
                }

        return TimeSeries(
            project_id=project_id,
            granularity=granularity,
            points=[{"period": b.isoformat(), **values} for b, values in sorted(points.items())],
            generated_at=self.clock(),
        )

    async def get_timeseries(
        self,
        project_id: str,
        granularity: str = "day",
        days: int = 30,
        requester: Optional[Requester] = None,
        as_of: Optional[datetime] = None,
    ) -> TimeSeries:
        """Active wallets, transactions and volume bucketed by day or week."""
        if granularity not in GRANULARITIES:
            raise ValueError(f"Unsupported granularity: {granularity}")
        requester = self._requester(project_id, requester)
        today = (as_of or self.clock()).date()
        key = make_key(project_id, "timeseries", {
            "granularity": granularity, "days": days, "as_of": today.isoformat(), "requester": requester.cache_key,
        })
        return await self._cached(
            key,
            lambda: self._timeseries(project_id, granularity, days, requester, today),
            lambda: TimeSeries(project_id=project_id, granularity=granularity, points=[],
                               generated_at=self.clock(), partial=True),
            cacheable=requester.buyer_id is None,
        )

    async def export(self, project_id: str, fmt: str = "json", requester: Optional[Requester] = None) -> str:
        """Dashboard as a JSON document or as sectioned CSV text."""
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt}")
        snapshot = await self.get_dashboard(project_id, requester)

        if fmt == "json":
            return json.dumps({"format": "json", "data": snapshot.to_dict(),
                               "exported_at": self.clock().isoformat()}, indent=2, default=str)
        return dashboard_to_csv(snapshot)

    def clear_cache(self, project_id: Optional[str] = None) -> int:
        return self.cache.clear(project_id)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()


def _section(title: str, frame: pd.DataFrame) -> str:
    return f"{title}\n{frame.to_csv(index=False)}"


def dashboard_to_csv(snapshot: DashboardSnapshot) -> str:
    sections: List[Tuple[str, pd.DataFrame]] = [
        ("OVERVIEW", pd.DataFrame(list(snapshot.overview.items()), columns=["metric", "value"])),
        ("PRODUCTIVITY", pd.DataFrame(list(snapshot.productivity.items()), columns=["metric", "value"])),
        ("COHORTS", pd.DataFrame(snapshot.cohorts, columns=[
            "cohort_type", "cohort_period", "wallet_count", "active_wallets", "avg_active_days", "avg_total_score",
        ])),
        ("ADOPTION FUNNEL", pd.DataFrame(snapshot.adoption_funnel, columns=[
            "stage", "wallet_count", "rate_from_total", "rate_from_previous",
        ])),
    ]
    body = "\n".join(_section(title, frame) for title, frame in sections)
    if snapshot.stale or snapshot.partial:
        body = f"# stale={snapshot.stale} partial={snapshot.partial}\n{body}"
    return body
