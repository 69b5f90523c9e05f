"""In-process repository with the same semantics as the Postgres store.

Rows are copied on the way in and out so callers can never observe or cause a
partially-applied update.
"""

import copy
from datetime import date, datetime
from itertools import count
from typing import Dict, List, Optional, Tuple

from services.storage.models import (
    STAGE_INDEX,
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
from services.storage.repository import AnalyticsRepository


class InMemoryStore(AnalyticsRepository):
    """Dictionary-backed repository for tests and local runs."""

    def __init__(self):
        self.wallets: Dict[str, Wallet] = {}
        self.transactions: Dict[Tuple[str, str], ProcessedTransaction] = {}
        self.activity: Dict[Tuple[str, date], WalletActivityMetric] = {}
        self.stages: Dict[Tuple[str, str], WalletAdoptionStage] = {}
        self.cohorts: Dict[int, WalletCohort] = {}
        self.assignments: Dict[Tuple[str, CohortType], WalletCohortAssignment] = {}
        self.scores: Dict[str, ProductivityScore] = {}
        self.grants: List[DataAccessGrant] = []
        self.monetization: Dict[str, MonetizationConfig] = {}
        self.privacy_log: List[PrivacyAuditEntry] = []
        self._cohort_ids = count(1)

    # Wallet registry

    async def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        wallet = self.wallets.get(wallet_id)
        return copy.copy(wallet) if wallet else None

    async def get_project_wallets(self, project_id: str) -> List[Wallet]:
        return await self.list_wallets(project_id)

    async def list_wallets(self, project_id: Optional[str] = None) -> List[Wallet]:
        wallets = [
            copy.copy(w) for w in self.wallets.values()
            if project_id is None or w.project_id == project_id
        ]
        return sorted(wallets, key=lambda w: (w.created_at, w.wallet_id))

    async def add_wallet(self, wallet: Wallet) -> None:
        self.wallets[wallet.wallet_id] = copy.copy(wallet)

    async def update_privacy_mode(self, wallet_id: str, mode: PrivacyMode, changed_at: datetime) -> None:
        wallet = copy.copy(self.wallets[wallet_id])
        wallet.privacy_mode = mode
        wallet.privacy_updated_at = changed_at
        self.wallets[wallet_id] = wallet

    async def record_privacy_change(self, entry: PrivacyAuditEntry) -> None:
        self.privacy_log.append(copy.copy(entry))

    async def get_privacy_history(self, wallet_id: str) -> List[PrivacyAuditEntry]:
        return [copy.copy(e) for e in self.privacy_log if e.wallet_id == wallet_id]

    async def get_monetization_config(self, wallet_id: str) -> Optional[MonetizationConfig]:
        config = self.monetization.get(wallet_id)
        return copy.copy(config) if config else None

    async def save_monetization_config(self, config: MonetizationConfig) -> None:
        self.monetization[config.wallet_id] = copy.copy(config)

    # Processed transactions

    async def insert_transactions(self, transactions: List[ProcessedTransaction]) -> List[ProcessedTransaction]:
        inserted = []
        for tx in transactions:
            key = (tx.wallet_id, tx.txid)
            if key in self.transactions:
                continue
            self.transactions[key] = copy.copy(tx)
            inserted.append(copy.copy(tx))
        return inserted

    async def get_transactions(
        self,
        wallet_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ProcessedTransaction]:
        rows = [
            copy.copy(tx) for (wid, _), tx in self.transactions.items()
            if wid == wallet_id
            and (since is None or tx.block_time >= since)
            and (until is None or tx.block_time < until)
        ]
        return sorted(rows, key=lambda tx: (tx.block_time, tx.sequence_position, tx.txid))

    async def get_sequence_state(self, wallet_id: str) -> Tuple[int, Optional[datetime]]:
        times = [tx.block_time for (wid, _), tx in self.transactions.items() if wid == wallet_id]
        return len(times), (max(times) if times else None)

    # Daily activity

    async def upsert_activity_metric(self, metric: WalletActivityMetric) -> None:
        self.activity[(metric.wallet_id, metric.activity_date)] = copy.copy(metric)

    async def get_activity_metrics(
        self,
        wallet_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[WalletActivityMetric]:
        rows = [
            copy.copy(m) for (wid, day), m in self.activity.items()
            if wid == wallet_id
            and (since is None or day >= since)
            and (until is None or day <= until)
        ]
        return sorted(rows, key=lambda m: m.activity_date)

    async def get_project_activity(
        self,
        project_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[WalletActivityMetric]:
        wallet_ids = {w.wallet_id for w in self.wallets.values() if w.project_id == project_id}
        rows = [
            copy.copy(m) for (wid, day), m in self.activity.items()
            if wid in wallet_ids
            and (since is None or day >= since)
            and (until is None or day <= until)
        ]
        return sorted(rows, key=lambda m: (m.activity_date, m.wallet_id))

    # Adoption stages

    async def get_adoption_stages(self, wallet_id: str) -> List[WalletAdoptionStage]:
        rows = [copy.copy(s) for (wid, _), s in self.stages.items() if wid == wallet_id]
        return sorted(rows, key=lambda s: STAGE_INDEX[s.stage])

    async def ensure_stage_rows(self, stages: List[WalletAdoptionStage]) -> None:
        for stage in stages:
            self.stages.setdefault((stage.wallet_id, stage.stage.value), copy.copy(stage))

    async def mark_stage_achieved(self, stage: WalletAdoptionStage) -> bool:
        key = (stage.wallet_id, stage.stage.value)
        current = self.stages.get(key)
        if current is not None and current.achieved_at is not None:
            return False
        self.stages[key] = copy.copy(stage)
        return True

    async def get_project_stages(self, project_id: str) -> Dict[str, List[WalletAdoptionStage]]:
        result = {}
        for wallet in await self.get_project_wallets(project_id):
            result[wallet.wallet_id] = await self.get_adoption_stages(wallet.wallet_id)
        return result

    # Cohorts

    async def get_or_create_cohort(self, cohort_type: CohortType, period: date) -> WalletCohort:
        for cohort in self.cohorts.values():
            if cohort.cohort_type == cohort_type and cohort.cohort_period == period:
                return copy.deepcopy(cohort)
        cohort = WalletCohort(cohort_id=next(self._cohort_ids), cohort_type=cohort_type, cohort_period=period)
        self.cohorts[cohort.cohort_id] = cohort
        return copy.deepcopy(cohort)

    async def get_cohort(self, cohort_id: int) -> Optional[WalletCohort]:
        cohort = self.cohorts.get(cohort_id)
        return copy.deepcopy(cohort) if cohort else None

    async def list_cohorts(self, cohort_type: Optional[CohortType] = None,
                           limit: Optional[int] = None) -> List[WalletCohort]:
        rows = [
            copy.deepcopy(c) for c in self.cohorts.values()
            if cohort_type is None or c.cohort_type == cohort_type
        ]
        rows.sort(key=lambda c: (c.cohort_period, c.cohort_type.value), reverse=True)
        return rows[:limit] if limit is not None else rows

    async def get_wallet_assignment(self, wallet_id: str,
                                    cohort_type: CohortType) -> Optional[WalletCohortAssignment]:
        assignment = self.assignments.get((wallet_id, cohort_type))
        return copy.copy(assignment) if assignment else None

    async def assign_wallet(self, wallet_id: str, cohort: WalletCohort) -> bool:
        key = (wallet_id, cohort.cohort_type)
        if key in self.assignments:
            return False
        self.assignments[key] = WalletCohortAssignment(wallet_id, cohort.cohort_id, cohort.cohort_type)
        self.cohorts[cohort.cohort_id].actual_wallet_count += 1
        return True

    async def get_cohort_wallet_ids(self, cohort_id: int) -> List[str]:
        return sorted(a.wallet_id for a in self.assignments.values() if a.cohort_id == cohort_id)

    async def update_cohort_retention(self, cohort_id: int, retention: Dict[int, Optional[float]]) -> None:
        cohort = copy.deepcopy(self.cohorts[cohort_id])
        cohort.retention.update(retention)
        self.cohorts[cohort_id] = cohort

    async def get_unassigned_wallets(self, cohort_type: CohortType) -> List[Wallet]:
        return [
            w for w in await self.list_wallets()
            if (w.wallet_id, cohort_type) not in self.assignments
        ]

    async def get_wallets_created_between(self, start: datetime, end: datetime) -> List[Wallet]:
        return [w for w in await self.list_wallets() if start <= w.created_at < end]

    # Productivity scores

    async def save_productivity_score(self, score: ProductivityScore) -> None:
        self.scores[score.wallet_id] = copy.copy(score)

    async def get_productivity_score(self, wallet_id: str) -> Optional[ProductivityScore]:
        score = self.scores.get(wallet_id)
        return copy.copy(score) if score else None

    async def get_project_scores(self, project_id: str) -> List[ProductivityScore]:
        wallet_ids = [w.wallet_id for w in await self.get_project_wallets(project_id)]
        return [copy.copy(self.scores[wid]) for wid in wallet_ids if wid in self.scores]

    # Grants

    async def add_grant(self, grant: DataAccessGrant) -> None:
        self.grants.append(copy.copy(grant))

    async def get_access_grant(self, buyer_id: str, wallet_id: str) -> Optional[DataAccessGrant]:
        matching = [g for g in self.grants if g.buyer_id == buyer_id and g.wallet_id == wallet_id]
        if not matching:
            return None
        return copy.copy(max(matching, key=lambda g: g.expires_at))
