"""Storage contract consumed by the analytics services.

Every method may block on I/O, so the whole interface is async. Implementations
commit each write atomically: readers never observe half-written rows.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from services.storage.models import (
    CohortType,
    DataAccessGrant,
    MonetizationConfig,
    PrivacyAuditEntry,
    PrivacyMode,
    ProcessedTransaction,
    ProductivityScore,
    Wallet,
    WalletActivityMetric,
    WalletAdoptionStage,
    WalletCohort,
    WalletCohortAssignment,
)


class GrantSource(ABC):
    """Lookup of data access grants held by buyers (monetization subsystem)."""

    @abstractmethod
    async def get_access_grant(self, buyer_id: str, wallet_id: str) -> Optional[DataAccessGrant]:
        """Return the latest grant for the pair, active or not."""


class AnalyticsRepository(GrantSource):
    """Persistence operations for wallets and every derived analytics entity."""

    # Wallet registry

    @abstractmethod
    async def get_wallet(self, wallet_id: str) -> Optional[Wallet]: ...

    @abstractmethod
    async def get_project_wallets(self, project_id: str) -> List[Wallet]: ...

    @abstractmethod
    async def list_wallets(self, project_id: Optional[str] = None) -> List[Wallet]: ...

    @abstractmethod
    async def add_wallet(self, wallet: Wallet) -> None: ...

    @abstractmethod
    async def update_privacy_mode(self, wallet_id: str, mode: PrivacyMode, changed_at: datetime) -> None: ...

    @abstractmethod
    async def record_privacy_change(self, entry: PrivacyAuditEntry) -> None: ...

    @abstractmethod
    async def get_privacy_history(self, wallet_id: str) -> List[PrivacyAuditEntry]: ...

    @abstractmethod
    async def get_monetization_config(self, wallet_id: str) -> Optional[MonetizationConfig]: ...

    @abstractmethod
    async def save_monetization_config(self, config: MonetizationConfig) -> None: ...

    # Processed transactions

    @abstractmethod
    async def insert_transactions(self, transactions: List[ProcessedTransaction]) -> List[ProcessedTransaction]:
        """Insert transactions, skipping known (wallet_id, txid) pairs; return the inserted ones."""

    @abstractmethod
    async def get_transactions(
        self,
        wallet_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ProcessedTransaction]:
        """Transactions of a wallet ordered by block time; ``until`` is exclusive."""

    @abstractmethod
    async def get_sequence_state(self, wallet_id: str) -> Tuple[int, Optional[datetime]]:
        """Number of stored transactions and the latest block time."""

    # Daily activity

    @abstractmethod
    async def upsert_activity_metric(self, metric: WalletActivityMetric) -> None: ...

    @abstractmethod
    async def get_activity_metrics(
        self,
        wallet_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[WalletActivityMetric]:
        """Daily rows ordered by date, both bounds inclusive."""

    @abstractmethod
    async def get_project_activity(
        self,
        project_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[WalletActivityMetric]: ...

    # Adoption stages

    @abstractmethod
    async def get_adoption_stages(self, wallet_id: str) -> List[WalletAdoptionStage]:
        """Stage rows in funnel order."""

    @abstractmethod
    async def ensure_stage_rows(self, stages: List[WalletAdoptionStage]) -> None:
        """Insert rows that do not exist yet; existing rows stay untouched."""

    @abstractmethod
    async def mark_stage_achieved(self, stage: WalletAdoptionStage) -> bool:
        """Record achievement only if the row is still unachieved; False when it already was."""

    @abstractmethod
    async def get_project_stages(self, project_id: str) -> Dict[str, List[WalletAdoptionStage]]: ...

    # Cohorts

    @abstractmethod
    async def get_or_create_cohort(self, cohort_type: CohortType, period: date) -> WalletCohort: ...

    @abstractmethod
    async def get_cohort(self, cohort_id: int) -> Optional[WalletCohort]: ...

    @abstractmethod
    async def list_cohorts(self, cohort_type: Optional[CohortType] = None,
                           limit: Optional[int] = None) -> List[WalletCohort]:
        """Cohorts ordered by period, most recent first."""

    @abstractmethod
    async def get_wallet_assignment(self, wallet_id: str,
                                    cohort_type: CohortType) -> Optional[WalletCohortAssignment]: ...

    @abstractmethod
    async def assign_wallet(self, wallet_id: str, cohort: WalletCohort) -> bool:
        """Assign once per cohort type and bump the cohort count; False when already assigned."""

    @abstractmethod
    async def get_cohort_wallet_ids(self, cohort_id: int) -> List[str]: ...

    @abstractmethod
    async def update_cohort_retention(self, cohort_id: int, retention: Dict[int, Optional[float]]) -> None: ...

    @abstractmethod
    async def get_unassigned_wallets(self, cohort_type: CohortType) -> List[Wallet]: ...

    @abstractmethod
    async def get_wallets_created_between(self, start: datetime, end: datetime) -> List[Wallet]:
        """Wallets with ``start <= created_at < end``."""

    # Productivity scores

    @abstractmethod
    async def save_productivity_score(self, score: ProductivityScore) -> None: ...

    @abstractmethod
    async def get_productivity_score(self, wallet_id: str) -> Optional[ProductivityScore]: ...

    @abstractmethod
    async def get_project_scores(self, project_id: str) -> List[ProductivityScore]: ...

    # Grants

    @abstractmethod
    async def add_grant(self, grant: DataAccessGrant) -> None: ...
