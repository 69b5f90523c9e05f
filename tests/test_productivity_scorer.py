import pytest
from unittest.mock import patch
from datetime import date, timedelta

from conftest import T0, make_tx, make_wallet
from services.errors import NotFoundError
from services.storage.models import (
    AdoptionStage,
    ProductivityScore,
    TransactionType,
    WalletActivityMetric,
    WalletAdoptionStage,
)
from services.wallets.activity_aggregator import ActivityAggregator
from services.wallets.productivity_scorer import (
    ActivityBaseline,
    ProductivityScorer,
    ScoringWeights,
    StatusThresholds,
    activity_score,
    adoption_score,
    classify_risk,
    classify_status,
    diversity_score,
    retention_score,
    summarize_scores,
)


def metric(day, count=1, volume=100_000):
    return WalletActivityMetric("w1", day, transaction_count=count, total_volume_zatoshi=volume, is_active=True)


def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        ScoringWeights(0.5, 0.5, 0.5, 0.5)
    with pytest.raises(ValueError):
        ScoringWeights(1.2, -0.2, 0.0, 0.0)

    assert ScoringWeights.from_tuple((0.25, 0.25, 0.25, 0.25)).activity == 0.25


def test_retention_score_recency_and_frequency():
    wallet = make_wallet(created_at=T0)
    today = T0.date() + timedelta(days=9)
    metrics = [metric(T0.date() + timedelta(days=d)) for d in range(0, 10, 2)]

    # last active yesterday, active every other day across a 10-day life
    assert retention_score(wallet, metrics, today) == 100.0
    assert retention_score(wallet, [], today) == 0.0


def test_retention_score_decays_with_inactivity():
    wallet = make_wallet(created_at=T0 - timedelta(days=100))
    metrics = [metric(T0.date())]

    recent = retention_score(wallet, metrics, T0.date() + timedelta(days=2))
    stale = retention_score(wallet, metrics, T0.date() + timedelta(days=40))

    assert recent > stale


def test_adoption_score_weights_later_stages_more():
    stages = [
        WalletAdoptionStage("w1", AdoptionStage.CREATED, achieved_at=T0),
        WalletAdoptionStage("w1", AdoptionStage.FIRST_TX, achieved_at=T0),
        WalletAdoptionStage("w1", AdoptionStage.FEATURE_USAGE),
    ]

    assert adoption_score(stages) == 15.0
    full = [WalletAdoptionStage("w1", stage, achieved_at=T0) for stage in AdoptionStage]
    assert adoption_score(full) == 100.0


def test_activity_score_against_baseline():
    baseline = ActivityBaseline(transactions=5, volume_zatoshi=1_000_000)
    today = T0.date()

    assert activity_score([metric(today, count=10, volume=2_000_000)], today, baseline) == 100.0
    assert activity_score([metric(today, count=5, volume=1_000_000)], today, baseline) == 50.0
    assert activity_score([metric(today - timedelta(days=40), count=50)], today, baseline) == 0.0


def test_diversity_score_counts_types_and_features():
    txs = [
        make_tx(txid="a", tx_type=TransactionType.TRANSFER, feature_used="memo"),
        make_tx(txid="b", tx_type=TransactionType.SWAP),
    ]

    assert diversity_score(txs) == 45.0
    assert diversity_score([]) == 0.0


def test_status_and_risk_bands():
    thresholds = StatusThresholds()

    assert classify_status(70, thresholds) == "healthy"
    assert classify_status(55, thresholds) == "at_risk"
    assert classify_status(39.9, thresholds) == "churn"
    assert classify_risk(60, thresholds) == "low"
    assert classify_risk(30, thresholds) == "medium"
    assert classify_risk(10, thresholds) == "high"


def test_combine_is_weighted_sum(store):
    scorer = ProductivityScorer(store)

    assert scorer.combine(100, 0, 0, 0) == pytest.approx(35.0)
    assert scorer.combine(100, 100, 100, 100) == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_recompute_persists_bounded_scores(store, clock):
    await store.add_wallet(make_wallet())
    await ActivityAggregator(store).aggregate("w1", [
        make_tx(txid="a", at=T0),
        make_tx(txid="b", at=T0 + timedelta(days=1), tx_type=TransactionType.SWAP),
    ])
    clock.advance(days=2)
    scorer = ProductivityScorer(store, clock=clock)

    score = await scorer.recompute("w1")

    for value in (score.retention_score, score.adoption_score, score.activity_score,
                  score.diversity_score, score.total_score):
        assert 0 <= value <= 100
    expected = (0.35 * score.retention_score + 0.25 * score.adoption_score
                + 0.25 * score.activity_score + 0.15 * score.diversity_score)
    assert score.total_score == pytest.approx(expected)
    assert await store.get_productivity_score("w1") == score


@pytest.mark.asyncio
async def test_recompute_overwrites_previous(store, clock):
    await store.add_wallet(make_wallet())
    scorer = ProductivityScorer(store, clock=clock)
    first = await scorer.recompute("w1")

    await ActivityAggregator(store).aggregate("w1", [make_tx(at=T0)])
    second = await scorer.recompute("w1")

    assert second.total_score > first.total_score
    assert (await store.get_productivity_score("w1")).total_score == second.total_score


@pytest.mark.asyncio
async def test_recompute_unknown_wallet(store):
    with pytest.raises(NotFoundError):
        await ProductivityScorer(store).recompute("missing")


@pytest.mark.asyncio
async def test_project_baseline_needs_enough_wallets(store, clock):
    scorer = ProductivityScorer(store, clock=clock)
    aggregator = ActivityAggregator(store)
    for i in range(5):
        wallet_id = f"w{i}"
        await store.add_wallet(make_wallet(wallet_id))
        await aggregator.aggregate(wallet_id, [
            make_tx(wallet_id, f"{wallet_id}-{n}", T0 + timedelta(minutes=n), value=1_000_000)
            for n in range(i + 1)
        ])

    baseline = await scorer.compute_baseline("p1")
    assert baseline.source == "project"
    assert baseline.transactions == 3.0

    fallback = await scorer.compute_baseline("other-project")
    assert fallback.source == "global"


@pytest.mark.asyncio
async def test_recompute_project_and_summary(store, clock):
    for wallet_id in ("w1", "w2"):
        await store.add_wallet(make_wallet(wallet_id))
    scorer = ProductivityScorer(store, clock=clock)

    batch = await scorer.recompute_project("p1")
    summary = await scorer.get_project_summary("p1")

    assert batch.succeeded == 2
    assert summary.scored_wallets == 2
    assert summary.status_distribution["churn"] == 2
    assert summary.health_percentage == 0.0


def test_summarize_scores_averages():
    scores = [
        ProductivityScore("a", 80, 60, 70, 50, 80.0, "healthy", "low"),
        ProductivityScore("b", 20, 20, 20, 20, 20.0, "churn", "high"),
    ]

    summary = summarize_scores("p1", 3, scores)

    assert summary.avg_total_score == 50.0
    assert summary.health_percentage == 50.0
    assert summary.risk_distribution == {"low": 1, "medium": 0, "high": 1}


@pytest.mark.asyncio
async def test_recompute_project_reports_failed_wallet(store, clock):
    for wallet_id in ("w1", "w2"):
        await store.add_wallet(make_wallet(wallet_id))
    scorer = ProductivityScorer(store, clock=clock)
    original = store.save_productivity_score

    async def failing_for_w1(score):
        if score.wallet_id == "w1":
            raise RuntimeError("disk full")
        await original(score)

    with patch.object(store, "save_productivity_score", side_effect=failing_for_w1):
        batch = await scorer.recompute_project("p1")

    assert batch.failed_items() == ["w1"]
    assert batch.succeeded == 1
    assert await store.get_productivity_score("w2") is not None
