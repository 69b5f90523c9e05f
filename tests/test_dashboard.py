import asyncio
import json

import pytest
import pytest_asyncio
from datetime import timedelta

from conftest import T0, make_tx, make_wallet
from services.dashboard.aggregation import (
    DashboardAggregationService,
    DashboardSnapshot,
    build_funnel,
    build_overview,
    dashboard_to_csv,
)
from services.dashboard.cache import DashboardCache, make_key
from services.errors import NotFoundError
from services.locks import WalletLockRegistry
from services.privacy.enforcement import PrivacyEnforcementService, Requester
from services.storage.models import DataAccessGrant, PrivacyMode
from services.wallets.activity_aggregator import ActivityAggregator
from services.wallets.adoption_stages import AdoptionStageEngine
from services.wallets.productivity_scorer import ProductivityScorer

BUYER = Requester(buyer_id="buyer-1")


class TickClock:
    """Monotonic clock for the cache, advanced by hand"""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest_asyncio.fixture
async def engine(store, clock):
    locks = WalletLockRegistry()
    aggregator = ActivityAggregator(store, locks)
    stages = AdoptionStageEngine(store, locks, clock=clock)
    scorer = ProductivityScorer(store, clock=clock)

    await store.add_wallet(make_wallet("a", privacy_mode=PrivacyMode.PRIVATE))
    await store.add_wallet(make_wallet("b", privacy_mode=PrivacyMode.PUBLIC))
    await store.add_wallet(make_wallet("c", privacy_mode=PrivacyMode.MONETIZABLE,
                                       created_at=T0 + timedelta(days=7)))
    await aggregator.aggregate("a", [make_tx("a", "a1", T0), make_tx("a", "a2", T0 + timedelta(days=1))])
    await aggregator.aggregate("b", [make_tx("b", "b1", T0 + timedelta(days=1), value=300_000)])
    for wallet_id in ("a", "b", "c"):
        await stages.update_stages(wallet_id)
    clock.advance(days=2)
    await scorer.recompute_project("p1")

    cache_clock = TickClock()
    privacy = PrivacyEnforcementService(store, clock=clock)
    service = DashboardAggregationService(
        store, privacy, cache=DashboardCache(ttl_seconds=300, clock=cache_clock),
        recompute_budget=1.0, clock=clock,
    )
    return service, privacy, cache_clock


def test_build_overview_and_funnel():
    rows = [
        {"active_days": 2, "transaction_count": 3, "total_volume_zatoshi": 150_000_000,
         "current_stage": "feature_usage", "status": "healthy", "total_score": 80.0},
        {"active_days": 0, "transaction_count": 0, "total_volume_zatoshi": 0, "current_stage": "created"},
    ]

    overview = build_overview(rows)
    funnel = build_funnel(rows)

    assert overview["active_wallets"] == 1
    assert overview["total_volume_zec"] == 1.5
    assert overview["avg_productivity_score"] == 80.0
    assert [f["wallet_count"] for f in funnel] == [2, 1, 1, 0, 0]
    assert funnel[1]["rate_from_previous"] == 50.0
    assert funnel[3]["rate_from_previous"] == 0.0


@pytest.mark.asyncio
async def test_owner_dashboard_covers_all_wallets(engine):
    service, _, _ = engine

    snapshot = await service.get_dashboard("p1")

    assert snapshot.overview["total_wallets"] == 3
    assert snapshot.overview["active_wallets"] == 2
    assert snapshot.overview["total_transactions"] == 3
    assert snapshot.productivity["scored_wallets"] == 3
    assert [f["wallet_count"] for f in snapshot.adoption_funnel][:2] == [3, 2]
    weekly = [c for c in snapshot.cohorts if c["cohort_type"] == "weekly"]
    assert [c["cohort_period"] for c in weekly] == ["2025-11-10", "2025-11-03"]
    assert snapshot.stale is False and snapshot.partial is False


@pytest.mark.asyncio
async def test_buyer_dashboard_only_sees_permitted_wallets(engine):
    service, _, _ = engine

    snapshot = await service.get_dashboard("p1", BUYER)

    # only the public wallet, anonymized
    assert snapshot.overview["total_wallets"] == 1
    assert snapshot.overview["total_volume_zatoshi"] == 300_000
    assert snapshot.overview["total_transactions"] == 1
    assert snapshot.productivity["scored_wallets"] == 1


@pytest.mark.asyncio
async def test_buyer_with_grant_sees_monetizable_wallet(engine, store):
    service, _, _ = engine
    await store.add_grant(DataAccessGrant("buyer-1", "c", T0, T0 + timedelta(days=30)))

    snapshot = await service.get_dashboard("p1", BUYER)

    assert snapshot.overview["total_wallets"] == 2


@pytest.mark.asyncio
async def test_unknown_project(engine):
    service, _, _ = engine

    with pytest.raises(NotFoundError):
        await service.get_dashboard("missing")


@pytest.mark.asyncio
async def test_dashboard_is_cached(engine, store):
    service, _, _ = engine

    first = await service.get_dashboard("p1")
    await store.add_wallet(make_wallet("d"))
    second = await service.get_dashboard("p1")

    assert second.overview == first.overview
    stats = service.get_cache_stats()
    assert stats["hits"] == 1
    assert stats["entries"] == 1


@pytest.mark.asyncio
async def test_buyer_requests_are_not_cached(engine):
    service, _, _ = engine

    await service.get_dashboard("p1", BUYER)
    await service.get_dashboard("p1", BUYER)

    assert service.get_cache_stats()["entries"] == 0


@pytest.mark.asyncio
async def test_expired_entry_is_recomputed(engine, store):
    service, _, cache_clock = engine
    await service.get_dashboard("p1")
    await store.add_wallet(make_wallet("d"))

    cache_clock.now += 301
    snapshot = await service.get_dashboard("p1")

    assert snapshot.overview["total_wallets"] == 4


@pytest.mark.asyncio
async def test_privacy_change_clears_project_cache(engine):
    service, privacy, _ = engine
    await service.get_dashboard("p1")
    assert service.get_cache_stats()["entries"] == 1

    await privacy.set_privacy_mode("a", "public")

    assert service.get_cache_stats()["entries"] == 0
    snapshot = await service.get_dashboard("p1", BUYER)
    assert snapshot.overview["total_wallets"] == 2


@pytest.mark.asyncio
async def test_slow_recompute_serves_stale_value(engine):
    service, _, cache_clock = engine
    fresh = await service.get_dashboard("p1")
    cache_clock.now += 400

    original = service._compose

    async def slow_compose(project_id, requester):
        await asyncio.sleep(0.2)
        return await original(project_id, requester)

    service._compose = slow_compose
    service.recompute_budget = 0.01

    snapshot = await service.get_dashboard("p1")

    assert snapshot.stale is True
    assert snapshot.cache_age_seconds == 400.0
    assert snapshot.overview == fresh.overview
    await asyncio.sleep(0.3)


@pytest.mark.asyncio
async def test_slow_recompute_without_cache_is_partial(engine):
    service, _, _ = engine

    async def slow_compose(project_id, requester):
        await asyncio.sleep(0.2)
        return DashboardSnapshot(project_id, {}, {}, [], [])

    service._compose = slow_compose
    service.recompute_budget = 0.01

    snapshot = await service.get_dashboard("p1")

    assert snapshot.partial is True
    assert snapshot.overview == {}
    await asyncio.sleep(0.3)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_recompute(engine):
    service, _, _ = engine
    calls = []
    original = service._compose

    async def counting_compose(project_id, requester):
        calls.append(project_id)
        await asyncio.sleep(0.01)
        return await original(project_id, requester)

    service._compose = counting_compose

    await asyncio.gather(*(service.get_dashboard("p1") for _ in range(5)))

    assert calls == ["p1"]


@pytest.mark.asyncio
async def test_daily_timeseries(engine, clock):
    service, _, _ = engine

    series = await service.get_timeseries("p1", "day", days=3, as_of=T0 + timedelta(days=1))

    assert [p["period"] for p in series.points] == ["2025-11-02", "2025-11-03", "2025-11-04"]
    assert [p["active_wallets"] for p in series.points] == [0, 1, 2]
    assert series.points[2]["volume_zatoshi"] == 400_000


@pytest.mark.asyncio
async def test_weekly_timeseries_respects_privacy(engine):
    service, _, _ = engine

    series = await service.get_timeseries("p1", "week", days=7, requester=BUYER, as_of=T0 + timedelta(days=6))

    assert [p["period"] for p in series.points] == ["2025-11-03"]
    assert series.points[0]["transactions"] == 1


@pytest.mark.asyncio
async def test_timeseries_rejects_unknown_granularity(engine):
    service, _, _ = engine

    with pytest.raises(ValueError):
        await service.get_timeseries("p1", "hour")


@pytest.mark.asyncio
async def test_export_json(engine):
    service, _, _ = engine

    document = json.loads(await service.export("p1", "json"))

    assert document["format"] == "json"
    assert document["data"]["overview"]["total_wallets"] == 3
    assert "exported_at" in document


@pytest.mark.asyncio
async def test_export_csv_sections(engine):
    service, _, _ = engine

    text = await service.export("p1", "csv")

    for title in ("OVERVIEW", "PRODUCTIVITY", "COHORTS", "ADOPTION FUNNEL"):
        assert f"{title}\n" in text
    assert "metric,value" in text
    assert "stage,wallet_count,rate_from_total,rate_from_previous" in text

    with pytest.raises(ValueError):
        await service.export("p1", "xml")


def test_csv_marks_stale_snapshots():
    snapshot = DashboardSnapshot("p1", {"total_wallets": 1}, {}, [], [], stale=True)

    assert dashboard_to_csv(snapshot).startswith("# stale=True partial=False")


def test_cache_ttl_and_stale_reads():
    tick = TickClock()
    cache = DashboardCache(ttl_seconds=10, clock=tick)
    key = make_key("p1", "dashboard", {"requester": "x"})
    cache.set(key, {"value": 1})

    assert cache.get(key) == {"value": 1}
    tick.now = 11
    assert cache.get(key) is None
    assert cache.get_stale(key) == ({"value": 1}, 11)

    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["stale_hits"] == 1
    assert stats["hit_rate"] == 0.5


def test_cache_returns_copies():
    cache = DashboardCache()
    key = make_key("p1", "dashboard")
    cache.set(key, {"rows": [1]})

    cache.get(key)["rows"].append(2)

    assert cache.get(key) == {"rows": [1]}


def test_cache_evicts_oldest_and_clears_by_project():
    tick = TickClock()
    cache = DashboardCache(max_entries=2, clock=tick)
    for i, project in enumerate(("p1", "p2", "p3")):
        tick.now = i
        cache.set(make_key(project, "dashboard"), i)

    assert cache.get(make_key("p1", "dashboard")) is None
    assert len(cache) == 2
    assert cache.clear("p2") == 1
    assert cache.clear() == 1
    assert cache.get_stats()["evictions"] == 1
    assert cache.get_stats()["invalidations"] == 2


def test_make_key_orders_params():
    assert make_key("p1", "ts", {"b": 1, "a": 2}) == make_key("p1", "ts", {"a": 2, "b": 1})
