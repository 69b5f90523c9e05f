"""Wires the analytics services around one repository."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from services.analysis.conversion_analysis import ConversionAnalysisService
from services.analysis.correlation_analyzer import CorrelationAnalyzer
from services.cohorts.cohort_assigner import CohortAssigner
from services.cohorts.retention import RetentionCalculator
from services.dashboard.aggregation import DashboardAggregationService
from services.dashboard.cache import DashboardCache
from services.locks import WalletLockRegistry
from services.privacy.enforcement import PrivacyEnforcementService
from services.storage.repository import AnalyticsRepository, GrantSource
from services.transactions.classifier import AddressBook, TransactionClassifier
from services.transactions.indexer_client import IndexerClient, TransactionSource
from services.transactions.ingestion import TransactionIngestionService
from services.wallets.activity_aggregator import ActivityAggregator
from services.wallets.adoption_stages import AdoptionStageEngine
from services.wallets.productivity_scorer import ProductivityScorer, ScoringWeights
from wallet_analytics.common.config import Settings, settings


@dataclass
class AnalyticsEngine:
    store: AnalyticsRepository
    locks: WalletLockRegistry
    classifier: TransactionClassifier
    aggregator: ActivityAggregator
    stages: AdoptionStageEngine
    cohorts: CohortAssigner
    retention: RetentionCalculator
    scorer: ProductivityScorer
    correlation: CorrelationAnalyzer
    conversion: ConversionAnalysisService
    privacy: PrivacyEnforcementService
    dashboard: DashboardAggregationService
    ingestion: Optional[TransactionIngestionService] = None


def build_engine(
    store: AnalyticsRepository,
    config: Settings = settings,
    source: Optional[TransactionSource] = None,
    address_book: Optional[AddressBook] = None,
    grants: Optional[GrantSource] = None,
) -> AnalyticsEngine:
    """
    Build every service on top of ``store``.

    Args:
        store: Repository shared by all services
        config: Settings providing timeouts, thresholds and weights
        source: Transaction source for ingestion; an IndexerClient is built
            from ``INDEXER_BASE_URL`` when omitted and the URL is set
        address_book: Counterparty resolver for the classifier
        grants: Grant lookup collaborator (defaults to the store)
    """
    locks = WalletLockRegistry()
    classifier = TransactionClassifier(address_book or AddressBook(), shielded_prefixes=config.shielded_prefixes)
    aggregator = ActivityAggregator(store, locks)
    stages = AdoptionStageEngine(store, locks)
    privacy = PrivacyEnforcementService(store, grants=grants, grant_timeout=config.upstream_timeout)
    dashboard = DashboardAggregationService(
        store,
        privacy,
        cache=DashboardCache(ttl_seconds=config.dashboard_cache_ttl),
        recompute_budget=config.dashboard_recompute_budget,
    )

    if source is None and config.indexer_base_url:
        source = IndexerClient(
            config.indexer_base_url,
            api_key=config.indexer_api_key,
            rate_limit_semaphore=asyncio.Semaphore(10),
            timeout=config.http_timeout,
            max_retries=config.max_retries,
        )

    ingestion = None
    if source is not None:
        ingestion = TransactionIngestionService(
            store, source, classifier, aggregator, stages, locks=locks,
            upstream_timeout=config.upstream_timeout,
        )

    return AnalyticsEngine(
        store=store,
        locks=locks,
        classifier=classifier,
        aggregator=aggregator,
        stages=stages,
        cohorts=CohortAssigner(store),
        retention=RetentionCalculator(store),
        scorer=ProductivityScorer(store, weights=ScoringWeights.from_tuple(config.score_weights)),
        correlation=CorrelationAnalyzer(store, min_sample_size=config.correlation_min_sample),
        conversion=ConversionAnalysisService(store, min_sample_size=config.conversion_min_sample),
        privacy=privacy,
        dashboard=dashboard,
        ingestion=ingestion,
    )
