"""
Tests for the asyncpg-backed repository
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from conftest import T0, make_tx
from services.storage.models import (
    AdoptionStage,
    CohortType,
    PrivacyMode,
    WalletAdoptionStage,
    WalletCohort,
)
from services.storage.postgres_store import PostgresStore, _num


def wallet_row(**overrides):
    row = {
        "wallet_id": "w1",
        "project_id": "p1",
        "address": "t1abc",
        "privacy_mode": "public",
        "privacy_updated_at": None,
        "is_active": True,
        "created_at": T0,
    }
    row.update(overrides)
    return row


@pytest.fixture
def pg(mock_asyncpg_pool):
    pool, conn = mock_asyncpg_pool
    return PostgresStore(pool), conn


def test_num_converts_decimal():
    assert _num(Decimal("12.50")) == 12.5
    assert isinstance(_num(Decimal("1")), float)
    assert _num(None) is None
    assert _num(3) == 3


@pytest.mark.asyncio
async def test_get_wallet_maps_row(pg):
    store, conn = pg
    conn.fetchrow.return_value = wallet_row()

    wallet = await store.get_wallet("w1")

    assert wallet.wallet_id == "w1"
    assert wallet.privacy_mode == PrivacyMode.PUBLIC
    assert wallet.created_at == T0
    args = conn.fetchrow.call_args[0]
    assert "FROM wallets WHERE wallet_id = $1" in args[0]
    assert args[1] == "w1"


@pytest.mark.asyncio
async def test_get_wallet_missing(pg):
    store, conn = pg
    conn.fetchrow.return_value = None

    assert await store.get_wallet("nope") is None


@pytest.mark.asyncio
async def test_mark_stage_achieved_reads_command_tag(pg):
    store, conn = pg
    stage = WalletAdoptionStage("w1", AdoptionStage.FIRST_TX, achieved_at=T0,
                                time_to_achieve_hours=1.0, conversion_probability=0.5)

    conn.execute.return_value = "UPDATE 1"
    assert await store.mark_stage_achieved(stage) is True

    conn.execute.return_value = "UPDATE 0"
    assert await store.mark_stage_achieved(stage) is False

    sql = conn.execute.call_args[0][0]
    assert "achieved_at IS NULL" in sql


@pytest.mark.asyncio
async def test_assign_wallet_bumps_count_once(pg):
    store, conn = pg
    cohort = WalletCohort(7, CohortType.WEEKLY, date(2025, 11, 3))

    conn.fetchval.return_value = 7
    assert await store.assign_wallet("w1", cohort) is True
    conn.execute.assert_awaited_once()
    assert "actual_wallet_count + 1" in conn.execute.call_args[0][0]

    conn.execute.reset_mock()
    conn.fetchval.return_value = None
    assert await store.assign_wallet("w1", cohort) is False
    conn.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_insert_transactions_returns_only_new_rows(pg):
    store, conn = pg
    txs = [make_tx(txid="a"), make_tx(txid="b", at=T0 + timedelta(hours=1))]
    conn.fetchval.side_effect = ["a", None]

    inserted = await store.insert_transactions(txs)

    assert [tx.txid for tx in inserted] == ["a"]
    assert conn.fetchval.await_count == 2
    assert "ON CONFLICT (wallet_id, txid) DO NOTHING" in conn.fetchval.call_args[0][0]
    conn.transaction.assert_called_once()


@pytest.mark.asyncio
async def test_insert_transactions_empty_skips_database(pg):
    store, conn = pg

    assert await store.insert_transactions([]) == []
    conn.fetchval.assert_not_awaited()


@pytest.mark.asyncio
async def test_get_sequence_state(pg):
    store, conn = pg
    conn.fetchrow.return_value = {"n": 4, "last_time": T0}

    assert await store.get_sequence_state("w1") == (4, T0)
