"""
Daily activity rollups for wallets.

Each touched calendar day (UTC) is rebuilt from the persisted transactions of
that day, so feeding the same transaction twice never double-counts.
"""

from dataclasses import asdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd
import structlog

from services.errors import NotFoundError
from services.locks import WalletLockRegistry
from services.storage.models import (
    ProcessedTransaction,
    TransactionSubtype,
    TransactionType,
    Wallet,
    WalletActivityMetric,
    utcnow,
)
from services.storage.repository import AnalyticsRepository

logger = structlog.get_logger()

RAPID_GAP_MINUTES = 5
LONG_GAP_MINUTES = 60


def sequence_complexity(transactions: List[ProcessedTransaction]) -> int:
    """Complexity of one day's transaction sequence, bounded to 0-100."""
    if not transactions:
        return 0

    ordered = sorted(transactions, key=lambda tx: tx.block_time)
    score = min(len(ordered) * 5, 30)
    score += len({tx.tx_type for tx in ordered}) * 10

    for previous, current in zip(ordered, ordered[1:]):
        gap_minutes = (current.block_time - previous.block_time).total_seconds() / 60
        if gap_minutes < RAPID_GAP_MINUTES:
            score += 5
        elif gap_minutes > LONG_GAP_MINUTES:
            score += 3

    score += 15 * sum(1 for tx in ordered if tx.is_shielded)
    score += 8 * sum(1 for tx in ordered if tx.tx_subtype == TransactionSubtype.MULTI_PARTY)
    return min(score, 100)


def build_daily_metric(
    wallet: Wallet,
    day: date,
    transactions: List[ProcessedTransaction],
    has_earlier_activity: bool,
) -> WalletActivityMetric:
    """Pure rollup of one wallet's transactions for one day."""
    by_type = [tx.tx_type for tx in transactions]
    count = len(transactions)
    return WalletActivityMetric(
        wallet_id=wallet.wallet_id,
        activity_date=day,
        transaction_count=count,
        total_volume_zatoshi=sum(abs(tx.value_zatoshi) for tx in transactions),
        total_fees_paid=sum(tx.fee_zatoshi for tx in transactions),
        transfers_count=by_type.count(TransactionType.TRANSFER),
        swaps_count=by_type.count(TransactionType.SWAP),
        bridges_count=by_type.count(TransactionType.BRIDGE),
        shielded_count=sum(1 for tx in transactions if tx.is_shielded),
        is_active=count >= 1,
        is_returning=count >= 1 and has_earlier_activity,
        days_since_creation=max((day - wallet.created_at.date()).days, 0),
        sequence_complexity_score=sequence_complexity(transactions),
    )


def _day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class ActivityAggregator:
    """Rolls classified transactions into per-wallet, per-day activity metrics."""

    def __init__(self, store: AnalyticsRepository, locks: Optional[WalletLockRegistry] = None):
        self.store = store
        self.locks = locks or WalletLockRegistry()
        self.logger = logger.bind(component="activity_aggregator")

    async def _get_wallet(self, wallet_id: str) -> Wallet:
        wallet = await self.store.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError("wallet", wallet_id)
        return wallet

    async def aggregate(
        self,
        wallet_id: str,
        transactions: Iterable[ProcessedTransaction],
    ) -> List[WalletActivityMetric]:
        """
        Persist transactions and refresh the daily metrics they touch.

        Args:
            wallet_id: Wallet the transactions belong to
            transactions: Classified transactions (duplicates are harmless)

        Returns:
            The refreshed daily metric rows, one per touched date
        """
        transactions = [tx for tx in transactions if tx.wallet_id == wallet_id]
        if not transactions:
            return []

        async with self.locks.hold(wallet_id):
            wallet = await self._get_wallet(wallet_id)
            inserted = await self.store.insert_transactions(transactions)
            touched = sorted({tx.activity_date for tx in transactions})

            refreshed = []
            for day in touched:
                refreshed.append(await self._rebuild_day(wallet, day))

        self.logger.info(
            "activity_aggregated",
            offered=len(transactions),
            new_transactions=len(inserted),
            days=len(refreshed),
        )
        return refreshed

    async def recompute_day(self, wallet_id: str, day: date) -> WalletActivityMetric:
        """Rebuild a single day from stored transactions."""
        async with self.locks.hold(wallet_id):
            wallet = await self._get_wallet(wallet_id)
            return await self._rebuild_day(wallet, day)

    async def _rebuild_day(self, wallet: Wallet, day: date) -> WalletActivityMetric:
        start, end = _day_bounds(day)
        day_transactions = await self.store.get_transactions(wallet.wallet_id, since=start, until=end)
        earlier = await self.store.get_activity_metrics(wallet.wallet_id, until=day - timedelta(days=1))

        metric = build_daily_metric(
            wallet, day, day_transactions, has_earlier_activity=any(m.is_active for m in earlier)
        )
        if metric.transaction_count:
            await self.store.upsert_activity_metric(metric)
        return metric

    async def get_period_summary(self, wallet_id: str, period: str = "week") -> List[Dict[str, Any]]:
        """
        Weekly or monthly rollup of daily metrics.

        Args:
            wallet_id: Wallet to summarize
            period: "week" (Monday start) or "month"

        Returns:
            One dict per period with activity counters
        """
        if period not in ("week", "month"):
            raise ValueError(f"Unsupported period: {period}")

        metrics = await self.store.get_activity_metrics(wallet_id)
        if not metrics:
            return []

        df = pd.DataFrame([asdict(m) for m in metrics])
        freq = "W-SUN" if period == "week" else "M"
        df["period_start"] = pd.to_datetime(df["activity_date"]).dt.to_period(freq).dt.start_time.dt.date

        grouped = df.groupby("period_start").agg(
            active_days=("is_active", "sum"),
            transaction_count=("transaction_count", "sum"),
            total_volume_zatoshi=("total_volume_zatoshi", "sum"),
            total_fees_paid=("total_fees_paid", "sum"),
            transfers_count=("transfers_count", "sum"),
            swaps_count=("swaps_count", "sum"),
            bridges_count=("bridges_count", "sum"),
            shielded_count=("shielded_count", "sum"),
            avg_sequence_complexity=("sequence_complexity_score", "mean"),
        ).reset_index()

        summary = []
        for row in grouped.to_dict("records"):
            row = {k: (v.item() if hasattr(v, "item") else v) for k, v in row.items()}
            row["avg_sequence_complexity"] = round(row["avg_sequence_complexity"], 2)
            summary.append(row)
        return summary

    async def get_activity_trend(
        self,
        wallet_id: str,
        days: int = 30,
        as_of: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Daily counters for the last ``days`` days, zero-filled for idle days."""
        end = (as_of or utcnow()).date()
        start = end - timedelta(days=days - 1)
        by_day = {m.activity_date: m for m in await self.store.get_activity_metrics(wallet_id, since=start, until=end)}

        trend = []
        for offset in range(days):
            day = start + timedelta(days=offset)
            metric = by_day.get(day)
            trend.append({
                "date": day,
                "transaction_count": metric.transaction_count if metric else 0,
                "total_volume_zatoshi": metric.total_volume_zatoshi if metric else 0,
                "is_active": bool(metric and metric.is_active),
            })
        return trend
