"""
Transaction ingestion orchestration.

Pulls raw transactions from the indexer, classifies them, numbers them in the
wallet's sequence, then refreshes activity metrics and adoption stages while
holding the wallet's lock.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

import aiohttp
import structlog

from services.batch import BatchResult
from services.errors import ConcurrentUpdateConflictError, NotFoundError, UpstreamUnavailableError
from services.locks import WalletLockRegistry
from services.storage.models import AdoptionStage, ProcessedTransaction
from services.storage.repository import AnalyticsRepository
from services.transactions.classifier import TransactionClassifier
from services.transactions.indexer_client import IndexerError, TransactionSource
from services.wallets.activity_aggregator import ActivityAggregator
from services.wallets.adoption_stages import AdoptionStageEngine
from wallet_analytics.common.logging_setup import log_batch_summary

logger = structlog.get_logger()


@dataclass
class SyncResult:
    wallet_id: str
    fetched: int = 0
    new_transactions: int = 0
    malformed: int = 0
    days_refreshed: int = 0
    stages_achieved: List[AdoptionStage] = field(default_factory=list)


def assign_sequence(
    transactions: List[ProcessedTransaction],
    previous_count: int,
    previous_time: Optional[datetime],
) -> List[ProcessedTransaction]:
    """Number transactions after the wallet's stored ones, in block time order."""
    ordered = sorted(transactions, key=lambda tx: (tx.block_time, tx.txid))
    last_time = previous_time
    for position, tx in enumerate(ordered, start=previous_count + 1):
        tx.sequence_position = position
        if last_time is not None:
            tx.time_since_previous_tx_minutes = max(int((tx.block_time - last_time).total_seconds() // 60), 0)
        last_time = tx.block_time
    return ordered


class TransactionIngestionService:
    """Keeps stored transactions, activity and stages in step with the indexer."""

    def __init__(
        self,
        store: AnalyticsRepository,
        source: TransactionSource,
        classifier: TransactionClassifier,
        aggregator: ActivityAggregator,
        stage_engine: AdoptionStageEngine,
        locks: Optional[WalletLockRegistry] = None,
        upstream_timeout: float = 30.0,
        max_concurrency: int = 5,
    ):
        self.store = store
        self.source = source
        self.classifier = classifier
        self.aggregator = aggregator
        self.stage_engine = stage_engine
        self.locks = locks or aggregator.locks
        self.upstream_timeout = upstream_timeout
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.logger = logger.bind(component="transaction_ingestion")

    async def _fetch(self, wallet_id: str, since: Optional[datetime]):
        try:
            return await asyncio.wait_for(
                self.source.fetch_transactions(wallet_id, since), timeout=self.upstream_timeout
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(f"transaction source timed out after {self.upstream_timeout}s") from e
        except (aiohttp.ClientError, IndexerError) as e:
            raise UpstreamUnavailableError(f"transaction source failed: {e}") from e

    async def sync_wallet(self, wallet_id: str, since: Optional[datetime] = None) -> SyncResult:
        """
        Ingest new transactions for one wallet.

        Args:
            wallet_id: Wallet to sync
            since: Only fetch transactions after this time

        Returns:
            SyncResult with counters and newly achieved stages

        Raises:
            NotFoundError: If the wallet does not exist
            UpstreamUnavailableError: If the transaction source times out or fails
        """
        wallet = await self.store.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError("wallet", wallet_id)

        raw = await self._fetch(wallet_id, since)
        classified, malformed = self.classifier.classify_batch(raw, wallet.address, wallet.wallet_id)
        result = SyncResult(wallet_id=wallet_id, fetched=len(raw), malformed=len(malformed))

        async with self.locks.hold(wallet_id):
            if classified:
                earliest = min(tx.block_time for tx in classified)
                known = {tx.txid for tx in await self.store.get_transactions(wallet_id, since=earliest)}
                fresh = [tx for tx in classified if tx.txid not in known]
            else:
                fresh = []

            if fresh:
                count, last_time = await self.store.get_sequence_state(wallet_id)
                fresh = assign_sequence(fresh, count, last_time)
                refreshed = await self.aggregator.aggregate(wallet_id, fresh)
                result.new_transactions = len(fresh)
                result.days_refreshed = len(refreshed)

            achieved = await self.stage_engine.update_stages(wallet_id)
            result.stages_achieved = [s.stage for s in achieved]

        self.logger.info(
            "wallet_synced",
            fetched=result.fetched,
            new_transactions=result.new_transactions,
            malformed=result.malformed,
            stages_achieved=[s.value for s in result.stages_achieved],
        )
        return result

    async def sync_wallets(self, wallet_ids: Iterable[str], since: Optional[datetime] = None) -> BatchResult:
        """Sync wallets concurrently; a wallet that fails is reported and the rest continue."""
        batch = BatchResult(operation="sync_wallets")

        async def run(wallet_id: str) -> None:
            async with self.semaphore:
                try:
                    result = await self.sync_wallet(wallet_id, since)
                except (UpstreamUnavailableError, NotFoundError, ConcurrentUpdateConflictError) as e:
                    self.logger.warning("wallet_sync_failed", error=str(e), error_type=e.__class__.__name__)
                    batch.fail(wallet_id, str(e))
                    return
                except Exception as e:
                    self.logger.exception("wallet_sync_error", wallet_id=wallet_id)
                    batch.fail(wallet_id, f"{e.__class__.__name__}: {e}")
                    return

            if result.new_transactions or result.stages_achieved:
                batch.succeed(wallet_id, data={
                    "new_transactions": result.new_transactions,
                    "malformed": result.malformed,
                    "stages_achieved": [s.value for s in result.stages_achieved],
                })
            else:
                batch.skip(wallet_id, "no new transactions")

        await asyncio.gather(*(run(wallet_id) for wallet_id in dict.fromkeys(wallet_ids)))

        batch.finish()
        log_batch_summary("transaction_ingestion", batch.operation, batch.succeeded,
                          batch.skipped, batch.failed, batch.duration_seconds)
        return batch
