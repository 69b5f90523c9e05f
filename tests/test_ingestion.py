import asyncio

import pytest
import pytest_asyncio
from datetime import timedelta
from unittest.mock import patch

from conftest import T0, make_tx, make_wallet
from services.errors import NotFoundError, UpstreamUnavailableError
from services.locks import WalletLockRegistry
from services.storage.models import AdoptionStage
from services.transactions.classifier import TransactionClassifier
from services.transactions.indexer_client import IndexerError, TransactionSource
from services.transactions.ingestion import TransactionIngestionService, assign_sequence
from services.wallets.activity_aggregator import ActivityAggregator
from services.wallets.adoption_stages import AdoptionStageEngine


def payload(wallet_id, txid, hours=0, value=50_000):
    at = T0 + timedelta(hours=hours)
    return {
        "txid": txid,
        "height": 2_500_000 + hours,
        "time": at.isoformat(),
        "vin": [{"address": "t1friend", "valueZat": value + 1_000}],
        "vout": [{"address": f"t1{wallet_id}", "valueZat": value}],
    }


class FakeSource(TransactionSource):
    def __init__(self, payloads=None, error=None, delay=0.0):
        self.payloads = payloads or {}
        self.error = error
        self.delay = delay
        self.calls = []

    async def fetch_transactions(self, wallet_id, since=None):
        self.calls.append((wallet_id, since))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.payloads.get(wallet_id, []))


@pytest_asyncio.fixture
async def build(store, clock):
    await store.add_wallet(make_wallet("w1"))
    await store.add_wallet(make_wallet("w2"))
    clock.advance(hours=2)

    def _build(source, **kwargs):
        locks = WalletLockRegistry()
        return TransactionIngestionService(
            store,
            source,
            TransactionClassifier(),
            ActivityAggregator(store, locks),
            AdoptionStageEngine(store, locks, clock=clock),
            **kwargs,
        )

    return _build


@pytest.mark.asyncio
async def test_sync_wallet_stores_and_advances_stages(build, store):
    source = FakeSource({"w1": [payload("w1", "a"), payload("w1", "b", hours=1)]})
    service = build(source)

    result = await service.sync_wallet("w1")

    assert result.fetched == 2
    assert result.new_transactions == 2
    assert result.malformed == 0
    assert result.days_refreshed == 1
    assert AdoptionStage.FIRST_TX in result.stages_achieved

    stored = await store.get_transactions("w1")
    assert [tx.sequence_position for tx in stored] == [1, 2]
    assert stored[1].time_since_previous_tx_minutes == 60


@pytest.mark.asyncio
async def test_sync_wallet_is_idempotent(build, store):
    source = FakeSource({"w1": [payload("w1", "a")]})
    service = build(source)

    await service.sync_wallet("w1")
    again = await service.sync_wallet("w1")

    assert again.fetched == 1
    assert again.new_transactions == 0
    assert again.stages_achieved == []
    assert len(await store.get_transactions("w1")) == 1


@pytest.mark.asyncio
async def test_sync_wallet_numbers_after_existing(build, store):
    service = build(FakeSource({"w1": [payload("w1", "a")]}))
    await service.sync_wallet("w1")

    service.source = FakeSource({"w1": [payload("w1", "a"), payload("w1", "c", hours=3)]})
    result = await service.sync_wallet("w1")

    assert result.new_transactions == 1
    stored = await store.get_transactions("w1")
    assert [(tx.txid, tx.sequence_position) for tx in stored] == [("a", 1), ("c", 2)]


@pytest.mark.asyncio
async def test_sync_wallet_counts_malformed(build, store):
    source = FakeSource({"w1": [payload("w1", "a"), {"txid": "broken"}]})
    service = build(source)

    result = await service.sync_wallet("w1")

    assert result.fetched == 2
    assert result.malformed == 1
    assert result.new_transactions == 1


@pytest.mark.asyncio
async def test_sync_unknown_wallet(build):
    service = build(FakeSource())

    with pytest.raises(NotFoundError):
        await service.sync_wallet("ghost")


@pytest.mark.asyncio
async def test_source_timeout_is_upstream_unavailable(build, store):
    service = build(FakeSource({"w1": [payload("w1", "a")]}, delay=0.5), upstream_timeout=0.01)

    with pytest.raises(UpstreamUnavailableError, match="timed out"):
        await service.sync_wallet("w1")

    assert await store.get_transactions("w1") == []


@pytest.mark.asyncio
async def test_source_error_is_upstream_unavailable(build):
    service = build(FakeSource(error=IndexerError("boom")))

    with pytest.raises(UpstreamUnavailableError, match="boom"):
        await service.sync_wallet("w1")


@pytest.mark.asyncio
async def test_sync_wallets_reports_each_wallet(build):
    source = FakeSource({"w1": [payload("w1", "a")]})
    service = build(source)

    with patch("services.transactions.ingestion.log_batch_summary") as summary:
        batch = await service.sync_wallets(["w1", "w2", "ghost", "w1"])

    statuses = {o.item_id: o.status.value for o in batch.outcomes}
    assert statuses == {"w1": "success", "w2": "skip", "ghost": "fail"}
    assert len(source.calls) == 2
    assert batch.failed_items() == ["ghost"]
    summary.assert_called_once()
    assert summary.call_args[0][:5] == ("transaction_ingestion", "sync_wallets", 1, 1, 1)


@pytest.mark.asyncio
async def test_sync_wallets_continues_past_upstream_failure(build):
    service = build(FakeSource(error=IndexerError("down")))

    with patch("services.transactions.ingestion.log_batch_summary"):
        batch = await service.sync_wallets(["w1", "w2"])

    assert batch.failed == 2
    assert batch.finished_at is not None


def test_assign_sequence_orders_by_block_time():
    later = make_tx(txid="b", at=T0 + timedelta(minutes=90))
    first = make_tx(txid="a", at=T0 + timedelta(minutes=30))

    ordered = assign_sequence([later, first], previous_count=3, previous_time=T0)

    assert [tx.txid for tx in ordered] == ["a", "b"]
    assert [tx.sequence_position for tx in ordered] == [4, 5]
    assert [tx.time_since_previous_tx_minutes for tx in ordered] == [30, 60]


def test_assign_sequence_first_transaction_has_no_gap():
    ordered = assign_sequence([make_tx(txid="a")], previous_count=0, previous_time=None)

    assert ordered[0].sequence_position == 1
    assert ordered[0].time_since_previous_tx_minutes is None


@pytest.mark.asyncio
async def test_sync_wallets_isolates_unexpected_errors(build, store):
    source = FakeSource({"w1": [payload("w1", "a")], "w2": [payload("w2", "b")]})
    service = build(source)
    original = store.get_transactions

    async def failing_for_w1(wallet_id, since=None, until=None):
        if wallet_id == "w1":
            raise RuntimeError("db write failed")
        return await original(wallet_id, since=since, until=until)

    with patch.object(store, "get_transactions", side_effect=failing_for_w1), \
         patch("services.transactions.ingestion.log_batch_summary") as summary:
        batch = await service.sync_wallets(["w1", "w2"])

    statuses = {o.item_id: o.status.value for o in batch.outcomes}
    assert statuses == {"w1": "fail", "w2": "success"}
    details = {o.item_id: o.detail for o in batch.outcomes}
    assert details["w1"] == "RuntimeError: db write failed"
    summary.assert_called_once()
