"""Persistence layer for wallet analytics entities."""

from services.storage.models import (
    FUNNEL_STAGES,
    AdoptionStage,
    CohortType,
    CounterpartyType,
    DataAccessGrant,
    MonetizationConfig,
    PrivacyAuditEntry,
    PrivacyMode,
    ProcessedTransaction,
    ProductivityScore,
    TransactionSubtype,
    TransactionType,
    Wallet,
    WalletActivityMetric,
    WalletAdoptionStage,
    WalletCohort,
    WalletCohortAssignment,
)
from services.storage.repository import AnalyticsRepository, GrantSource
from services.storage.memory_store import InMemoryStore
from services.storage.postgres_store import PostgresStore

__all__ = [
    "FUNNEL_STAGES",
    "AdoptionStage",
    "CohortType",
    "CounterpartyType",
    "DataAccessGrant",
    "MonetizationConfig",
    "PrivacyAuditEntry",
    "PrivacyMode",
    "ProcessedTransaction",
    "ProductivityScore",
    "TransactionSubtype",
    "TransactionType",
    "Wallet",
    "WalletActivityMetric",
    "WalletAdoptionStage",
    "WalletCohort",
    "WalletCohortAssignment",
    "AnalyticsRepository",
    "GrantSource",
    "InMemoryStore",
    "PostgresStore",
]
