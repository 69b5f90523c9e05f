import pytest
from datetime import timedelta

from conftest import T0, make_wallet
from services.analysis.conversion_analysis import (
    ConversionAnalysisService,
    DropOffThresholds,
    HealthBands,
    StageConversion,
    analyze_drop_offs,
    classify_severity,
    compute_conversions,
    funnel_health,
)
from services.storage.models import FUNNEL_STAGES, AdoptionStage, WalletAdoptionStage


async def seed(store, wallet_id, reached, created_at=T0):
    """Wallet that achieved every stage up to and including ``reached``"""
    await store.add_wallet(make_wallet(wallet_id, created_at=created_at))
    rows = []
    for index, stage in enumerate(FUNNEL_STAGES):
        achieved_at = created_at + timedelta(hours=index) if index <= reached else None
        rows.append(WalletAdoptionStage(wallet_id, stage, achieved_at=achieved_at))
    await store.ensure_stage_rows(rows)


def counts(*values):
    return dict(zip(FUNNEL_STAGES, values))


def test_drop_off_complements_conversion():
    conversions = compute_conversions(counts(3, 2, 1, 1, 0), min_sample_size=1)

    for c in conversions:
        assert c.conversion_rate + c.drop_off_rate == pytest.approx(100)
    assert conversions[0].conversion_rate == 66.67
    assert conversions[0].drop_off_rate == pytest.approx(33.33)
    assert conversions[0].wallets_dropped == 1


def test_zero_earlier_stage_gives_zero_conversion():
    conversions = compute_conversions(counts(4, 0, 0, 0, 0), min_sample_size=1)

    assert conversions[1].sample_size == 0
    assert conversions[1].conversion_rate == 0.0
    assert conversions[1].drop_off_rate == 100.0
    assert conversions[1].statistical_significance is False


def test_transitions_follow_funnel_order():
    conversions = compute_conversions(counts(1, 1, 1, 1, 1), min_sample_size=1)

    assert [(c.from_stage, c.to_stage) for c in conversions] == list(zip(FUNNEL_STAGES, FUNNEL_STAGES[1:]))


def test_severity_tiers():
    thresholds = DropOffThresholds()

    assert classify_severity(70, thresholds) == "high"
    assert classify_severity(50, thresholds) == "medium"
    assert classify_severity(49.99, thresholds) == "low"


def test_drop_offs_sorted_by_priority_then_impact():
    conversions = [
        StageConversion(AdoptionStage.CREATED, AdoptionStage.FIRST_TX, 20.0, 80.0, 20, 80, 100, True),
        StageConversion(AdoptionStage.FIRST_TX, AdoptionStage.FEATURE_USAGE, 40.0, 60.0, 8, 12, 20, True),
        StageConversion(AdoptionStage.FEATURE_USAGE, AdoptionStage.RECURRING, 0.0, 100.0, 0, 8, 8, False),
        StageConversion(AdoptionStage.RECURRING, AdoptionStage.HIGH_VALUE, 90.0, 10.0, 9, 1, 10, True),
    ]

    drop_offs = analyze_drop_offs(conversions, DropOffThresholds())

    assert [d.transition for d in drop_offs] == [
        "created -> first_tx",
        "feature_usage -> recurring",
        "first_tx -> feature_usage",
        "recurring -> high_value",
    ]
    assert drop_offs[0].impact_score == 64.0
    # high severity but below the sample gate loses one priority level
    assert drop_offs[1].severity == "high"
    assert drop_offs[1].priority == 2
    assert drop_offs[3].priority == 1


def test_recommendations_depend_on_transition():
    conversions = [
        StageConversion(AdoptionStage.CREATED, AdoptionStage.FIRST_TX, 20.0, 80.0, 2, 8, 10, True),
        StageConversion(AdoptionStage.RECURRING, AdoptionStage.HIGH_VALUE, 50.0, 50.0, 5, 5, 10, True),
    ]

    onboarding, high_value = analyze_drop_offs(conversions, DropOffThresholds())

    assert "Improve onboarding flow to guide users to their first transaction" in onboarding.recommendations
    assert "Conduct user research to understand barriers" in onboarding.recommendations
    assert high_value.recommendations == []


def test_funnel_health_penalizes_high_severity():
    conversions = compute_conversions(counts(10, 2, 2, 2, 2), min_sample_size=1)
    drop_offs = analyze_drop_offs(conversions, DropOffThresholds())

    score, status, avg, high = funnel_health(conversions, drop_offs, HealthBands())

    assert avg == 80.0
    assert high == 1
    assert score == 70.0
    assert status == "healthy"


def test_funnel_health_critical_and_bounded():
    conversions = compute_conversions(counts(10, 0, 0, 0, 0), min_sample_size=1)
    drop_offs = analyze_drop_offs(conversions, DropOffThresholds())

    score, status, _, high = funnel_health(conversions, drop_offs, HealthBands())

    assert high == 4
    assert score == 0.0
    assert status == "critical"


@pytest.mark.asyncio
async def test_calculate_conversions_from_store(store):
    for i, reached in enumerate([0, 1, 1, 2, 4]):
        await seed(store, f"w{i}", reached)
    service = ConversionAnalysisService(store, min_sample_size=3)

    conversions = await service.calculate_conversions("p1")

    assert [c.sample_size for c in conversions] == [5, 4, 2, 1]
    assert conversions[0].conversion_rate == 80.0
    assert [c.statistical_significance for c in conversions] == [True, True, False, False]

    relaxed = await service.calculate_conversions("p1", min_sample_size=1)
    assert all(c.statistical_significance for c in relaxed)


@pytest.mark.asyncio
async def test_created_between_filters_wallets(store):
    await seed(store, "early", 1, created_at=T0)
    await seed(store, "late", 0, created_at=T0 + timedelta(days=10))
    service = ConversionAnalysisService(store)

    conversions = await service.calculate_conversions("p1", created_between=(T0, T0 + timedelta(days=1)))

    assert conversions[0].sample_size == 1
    assert conversions[0].conversion_rate == 100.0


@pytest.mark.asyncio
async def test_cohort_funnels_keyed_by_week(store):
    await seed(store, "a", 1, created_at=T0)
    await seed(store, "b", 0, created_at=T0 + timedelta(days=2))
    await seed(store, "c", 1, created_at=T0 + timedelta(days=8))
    service = ConversionAnalysisService(store)

    funnels = await service.get_cohort_funnels("p1")

    assert list(funnels) == ["2025-11-10", "2025-11-03"]
    assert funnels["2025-11-03"][0].conversion_rate == 50.0
    assert funnels["2025-11-10"][0].conversion_rate == 100.0


@pytest.mark.asyncio
async def test_conversion_trends(store):
    await seed(store, "a", 1, created_at=T0)
    await seed(store, "old", 1, created_at=T0 - timedelta(days=200))
    service = ConversionAnalysisService(store)

    daily = await service.get_conversion_trends("p1", "day", as_of=T0 + timedelta(days=1))
    monthly = await service.get_conversion_trends("p1", "month", as_of=T0 + timedelta(days=1))

    assert list(daily) == ["2025-11-03"]
    assert list(monthly) == ["2025-11-01"]

    with pytest.raises(ValueError):
        await service.get_conversion_trends("p1", "quarter")


@pytest.mark.asyncio
async def test_generate_report(store, clock):
    for i in range(10):
        await seed(store, f"w{i}", 1 if i < 3 else 0)
    clock.advance(days=1)
    service = ConversionAnalysisService(store, clock=clock)

    report = await service.generate_report("p1", min_sample_size=1)

    assert report.drop_offs[0].transition == "created -> first_tx"
    assert report.drop_offs[0].severity == "high"
    assert len(report.priority_actions) == 3
    assert report.priority_actions[0]["priority"] == 3
    assert report.status == "critical"
    assert "Address high-impact drop-off points immediately" not in report.overall_suggestions
    assert report.overall_suggestions[0] == "Conduct comprehensive user experience audit"
    assert "2025-11-03" in report.cohort_funnels
    assert "2025-11-03" in report.trends


@pytest.mark.asyncio
async def test_empty_project_report(store):
    report = await ConversionAnalysisService(store).generate_report("empty")

    assert report.funnel_health_score == 0.0
    assert all(c.conversion_rate == 0.0 for c in report.conversions)
    assert report.cohort_funnels == {}


@pytest.mark.asyncio
async def test_wallets_without_stage_rows_count_as_created(store):
    for wallet_id in ("a", "b", "c", "d"):
        await store.add_wallet(make_wallet(wallet_id))
    await seed(store, "e", 1)
    service = ConversionAnalysisService(store, min_sample_size=1)

    conversions = await service.calculate_conversions("p1")

    assert conversions[0].from_stage == AdoptionStage.CREATED
    assert conversions[0].sample_size == 5
    assert conversions[0].wallets_converted == 1
    assert conversions[0].conversion_rate == 20.0
