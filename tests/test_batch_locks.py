import asyncio

import pytest

from services.batch import BatchResult, OutcomeStatus
from services.locks import WalletLockRegistry


def test_batch_result_counts():
    batch = BatchResult(operation="assign")
    batch.succeed("w1", data={"cohort_id": 3})
    batch.skip("w2", "already assigned")
    batch.fail("w3", "not found")
    batch.finish()

    assert (batch.succeeded, batch.skipped, batch.failed) == (1, 1, 1)
    assert batch.failed_items() == ["w3"]
    assert batch.outcomes[0].status == OutcomeStatus.SUCCESS
    assert batch.duration_seconds >= 0


def test_batch_result_to_dict():
    batch = BatchResult(operation="assign")
    batch.skip("w2", "already assigned")

    data = batch.finish().to_dict()

    assert data["operation"] == "assign"
    assert data["skipped"] == 1
    assert data["items"] == [{"item_id": "w2", "status": "skip", "detail": "already assigned"}]


@pytest.mark.asyncio
async def test_lock_is_reentrant_for_owner():
    locks = WalletLockRegistry()

    async with locks.hold("w1"):
        async with locks.hold("w1"):
            assert locks.is_locked("w1")
        assert locks.is_locked("w1")

    assert not locks.is_locked("w1")


@pytest.mark.asyncio
async def test_lock_serializes_same_wallet():
    locks = WalletLockRegistry()
    order = []

    async def writer(name):
        async with locks.hold("w1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(writer("a"), writer("b"))

    assert order == ["a-start", "a-end", "b-start", "b-end"]


@pytest.mark.asyncio
async def test_different_wallets_do_not_contend():
    locks = WalletLockRegistry()
    seen = []

    async def hold_w2():
        async with locks.hold("w2"):
            seen.append(len(locks))

    async with locks.hold("w1"):
        await asyncio.wait_for(hold_w2(), timeout=0.5)

    assert seen == [2]


@pytest.mark.asyncio
async def test_released_locks_are_pruned():
    locks = WalletLockRegistry()

    async def writer(wallet_id):
        async with locks.hold(wallet_id):
            await asyncio.sleep(0.01)

    await asyncio.gather(*(writer(f"w{i % 3}") for i in range(9)))

    assert len(locks) == 0


@pytest.mark.asyncio
async def test_waiting_task_keeps_lock_alive():
    locks = WalletLockRegistry()
    order = []

    async def writer(name):
        async with locks.hold("w1"):
            order.append(name)
            await asyncio.sleep(0.01)

    first = asyncio.ensure_future(writer("a"))
    await asyncio.sleep(0)
    second = asyncio.ensure_future(writer("b"))
    await asyncio.sleep(0)
    assert len(locks) == 1

    await asyncio.gather(first, second)

    assert order == ["a", "b"]
    assert len(locks) == 0
