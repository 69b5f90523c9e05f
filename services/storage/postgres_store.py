"""
Postgres repository on an asyncpg pool.

Provides:
- Idempotent inserts via ON CONFLICT
- Optimistic stage writes (``WHERE achieved_at IS NULL``)
- Exactly-once cohort assignment with the wallet count bumped in the same transaction
- Retry with exponential backoff on dropped connections
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
from asyncpg import exceptions as pg_exc
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from services.storage.models import (
    STAGE_INDEX,
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
from services.storage.repository import AnalyticsRepository

logger = structlog.get_logger()

TRANSIENT_ERRORS = (pg_exc.PostgresConnectionError, pg_exc.InterfaceError, ConnectionError)

_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True,
)

WALLET_COLUMNS = "wallet_id, project_id, address, privacy_mode, privacy_updated_at, is_active, created_at"

TX_COLUMNS = (
    "wallet_id, txid, block_height, block_time, tx_type, tx_subtype, value_zatoshi, fee_zatoshi, "
    "counterparty_address, counterparty_type, feature_used, is_shielded, shielded_pool_entry, "
    "shielded_pool_exit, complexity_score, sequence_position, time_since_previous_tx_minutes"
)

METRIC_COLUMNS = (
    "wallet_id, activity_date, transaction_count, total_volume_zatoshi, total_fees_paid, "
    "transfers_count, swaps_count, bridges_count, shielded_count, is_active, is_returning, "
    "days_since_creation, sequence_complexity_score"
)

COHORT_COLUMNS = (
    "cohort_id, cohort_type, cohort_period, actual_wallet_count, retention_week_1, "
    "retention_week_2, retention_week_3, retention_week_4, created_at"
)

SCORE_COLUMNS = (
    "wallet_id, retention_score, adoption_score, activity_score, diversity_score, "
    "total_score, status, risk_level, calculated_at"
)


def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value) if isinstance(value, Decimal) else value


def _wallet(row) -> Wallet:
    return Wallet(
        wallet_id=row["wallet_id"],
        project_id=row["project_id"],
        address=row["address"],
        created_at=row["created_at"],
        privacy_mode=PrivacyMode(row["privacy_mode"]),
        privacy_updated_at=row["privacy_updated_at"],
        is_active=row["is_active"],
    )


def _transaction(row) -> ProcessedTransaction:
    return ProcessedTransaction(
        wallet_id=row["wallet_id"],
        txid=row["txid"],
        block_height=row["block_height"],
        block_time=row["block_time"],
        tx_type=TransactionType(row["tx_type"]),
        tx_subtype=TransactionSubtype(row["tx_subtype"]),
        value_zatoshi=row["value_zatoshi"],
        fee_zatoshi=row["fee_zatoshi"],
        counterparty_address=row["counterparty_address"],
        counterparty_type=CounterpartyType(row["counterparty_type"]),
        feature_used=row["feature_used"],
        is_shielded=row["is_shielded"],
        shielded_pool_entry=row["shielded_pool_entry"],
        shielded_pool_exit=row["shielded_pool_exit"],
        complexity_score=row["complexity_score"],
        sequence_position=row["sequence_position"],
        time_since_previous_tx_minutes=row["time_since_previous_tx_minutes"],
    )


def _metric(row) -> WalletActivityMetric:
    return WalletActivityMetric(**{key: row[key] for key in METRIC_COLUMNS.split(", ")})


def _stage(row) -> WalletAdoptionStage:
    return WalletAdoptionStage(
        wallet_id=row["wallet_id"],
        stage=AdoptionStage(row["stage_name"]),
        achieved_at=row["achieved_at"],
        time_to_achieve_hours=_num(row["time_to_achieve_hours"]),
        conversion_probability=_num(row["conversion_probability"]),
    )


def _cohort(row) -> WalletCohort:
    return WalletCohort(
        cohort_id=row["cohort_id"],
        cohort_type=CohortType(row["cohort_type"]),
        cohort_period=row["cohort_period"],
        actual_wallet_count=row["actual_wallet_count"],
        retention={week: _num(row[f"retention_week_{week}"]) for week in range(1, 5)},
        created_at=row["created_at"],
    )


def _score(row) -> ProductivityScore:
    return ProductivityScore(
        wallet_id=row["wallet_id"],
        retention_score=_num(row["retention_score"]),
        adoption_score=_num(row["adoption_score"]),
        activity_score=_num(row["activity_score"]),
        diversity_score=_num(row["diversity_score"]),
        total_score=_num(row["total_score"]),
        status=row["status"],
        risk_level=row["risk_level"],
        calculated_at=row["calculated_at"],
    )


class PostgresStore(AnalyticsRepository):
    """Repository backed by the analytics schema in ``sql/schema.sql``."""

    def __init__(self, db_pool: asyncpg.Pool):
        """
        Initialize store.

        Args:
            db_pool: AsyncPG connection pool
        """
        self.pool = db_pool
        self.logger = logger.bind(component="postgres_store")

    @classmethod
    async def connect(cls, database_url: str, min_size: int = 2, max_size: int = 10) -> "PostgresStore":
        pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
        return cls(pool)

    async def close(self) -> None:
        await self.pool.close()

    @_retry
    async def _fetch(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    @_retry
    async def _fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @_retry
    async def _execute(self, query: str, *args) -> str:
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    # Wallet registry

    async def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        row = await self._fetchrow(f"SELECT {WALLET_COLUMNS} FROM wallets WHERE wallet_id = $1", wallet_id)
        return _wallet(row) if row else None

    async def get_project_wallets(self, project_id: str) -> List[Wallet]:
        return await self.list_wallets(project_id)

    async def list_wallets(self, project_id: Optional[str] = None) -> List[Wallet]:
        rows = await self._fetch(
            f"""
            SELECT {WALLET_COLUMNS} FROM wallets
            WHERE $1::varchar IS NULL OR project_id = $1
            ORDER BY created_at, wallet_id
            """,
            project_id,
        )
        return [_wallet(r) for r in rows]

    async def add_wallet(self, wallet: Wallet) -> None:
        await self._execute(
            f"""
            INSERT INTO wallets ({WALLET_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (wallet_id) DO NOTHING
            """,
            wallet.wallet_id, wallet.project_id, wallet.address, wallet.privacy_mode.value,
            wallet.privacy_updated_at, wallet.is_active, wallet.created_at,
        )

    async def update_privacy_mode(self, wallet_id: str, mode: PrivacyMode, changed_at: datetime) -> None:
        await self._execute(
            "UPDATE wallets SET privacy_mode = $2, privacy_updated_at = $3 WHERE wallet_id = $1",
            wallet_id, mode.value, changed_at,
        )

    async def record_privacy_change(self, entry: PrivacyAuditEntry) -> None:
        await self._execute(
            """
            INSERT INTO privacy_audit_log (wallet_id, previous_mode, new_mode, changed_at)
            VALUES ($1, $2, $3, $4)
            """,
            entry.wallet_id, entry.previous_mode.value, entry.new_mode.value, entry.changed_at,
        )

    async def get_privacy_history(self, wallet_id: str) -> List[PrivacyAuditEntry]:
        rows = await self._fetch(
            """
            SELECT wallet_id, previous_mode, new_mode, changed_at FROM privacy_audit_log
            WHERE wallet_id = $1 ORDER BY changed_at, id
            """,
            wallet_id,
        )
        return [
            PrivacyAuditEntry(r["wallet_id"], PrivacyMode(r["previous_mode"]), PrivacyMode(r["new_mode"]), r["changed_at"])
            for r in rows
        ]

    async def get_monetization_config(self, wallet_id: str) -> Optional[MonetizationConfig]:
        row = await self._fetchrow(
            "SELECT wallet_id, payout_address, configured_at FROM wallet_monetization_configs WHERE wallet_id = $1",
            wallet_id,
        )
        return MonetizationConfig(row["wallet_id"], row["payout_address"], row["configured_at"]) if row else None

    async def save_monetization_config(self, config: MonetizationConfig) -> None:
        await self._execute(
            """
            INSERT INTO wallet_monetization_configs (wallet_id, payout_address, configured_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (wallet_id) DO UPDATE SET
                payout_address = EXCLUDED.payout_address,
                configured_at = EXCLUDED.configured_at
            """,
            config.wallet_id, config.payout_address, config.configured_at,
        )

    # Processed transactions

    async def insert_transactions(self, transactions: List[ProcessedTransaction]) -> List[ProcessedTransaction]:
        if not transactions:
            return []

        insert_sql = f"""
            INSERT INTO processed_transactions ({TX_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
            ON CONFLICT (wallet_id, txid) DO NOTHING
            RETURNING txid
        """

        inserted = []
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for tx in transactions:
                    txid = await conn.fetchval(
                        insert_sql,
                        tx.wallet_id, tx.txid, tx.block_height, tx.block_time, tx.tx_type.value,
                        tx.tx_subtype.value, tx.value_zatoshi, tx.fee_zatoshi, tx.counterparty_address,
                        tx.counterparty_type.value, tx.feature_used, tx.is_shielded,
                        tx.shielded_pool_entry, tx.shielded_pool_exit, tx.complexity_score,
                        tx.sequence_position, tx.time_since_previous_tx_minutes,
                    )
                    if txid is not None:
                        inserted.append(tx)

        self.logger.info("transactions_inserted", offered=len(transactions), inserted=len(inserted))
        return inserted

    async def get_transactions(
        self,
        wallet_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ProcessedTransaction]:
        rows = await self._fetch(
            f"""
            SELECT {TX_COLUMNS} FROM processed_transactions
            WHERE wallet_id = $1
              AND ($2::timestamptz IS NULL OR block_time >= $2)
              AND ($3::timestamptz IS NULL OR block_time < $3)
            ORDER BY block_time, sequence_position, txid
            """,
            wallet_id, since, until,
        )
        return [_transaction(r) for r in rows]

    async def get_sequence_state(self, wallet_id: str) -> Tuple[int, Optional[datetime]]:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS n, MAX(block_time) AS last_time FROM processed_transactions WHERE wallet_id = $1",
            wallet_id,
        )
        return row["n"], row["last_time"]

    # Daily activity

    async def upsert_activity_metric(self, metric: WalletActivityMetric) -> None:
        columns = METRIC_COLUMNS.split(", ")
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns[2:])
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        await self._execute(
            f"""
            INSERT INTO wallet_activity_metrics ({METRIC_COLUMNS})
            VALUES ({placeholders})
            ON CONFLICT (wallet_id, activity_date)
            DO UPDATE SET {updates}, updated_at = NOW()
            """,
            *[getattr(metric, c) for c in columns],
        )

    async def get_activity_metrics(
        self,
        wallet_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[WalletActivityMetric]:
        rows = await self._fetch(
            f"""
            SELECT {METRIC_COLUMNS} FROM wallet_activity_metrics
            WHERE wallet_id = $1
              AND ($2::date IS NULL OR activity_date >= $2)
              AND ($3::date IS NULL OR activity_date <= $3)
            ORDER BY activity_date
            """,
            wallet_id, since, until,
        )
        return [_metric(r) for r in rows]

    async def get_project_activity(
        self,
        project_id: str,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[WalletActivityMetric]:
        columns = ", ".join(f"m.{c}" for c in METRIC_COLUMNS.split(", "))
        rows = await self._fetch(
            f"""
            SELECT {columns}
            FROM wallet_activity_metrics m
            JOIN wallets w ON w.wallet_id = m.wallet_id
            WHERE w.project_id = $1
              AND ($2::date IS NULL OR m.activity_date >= $2)
              AND ($3::date IS NULL OR m.activity_date <= $3)
            ORDER BY m.activity_date, m.wallet_id
            """,
            project_id, since, until,
        )
        return [_metric(r) for r in rows]

    # Adoption stages

    async def get_adoption_stages(self, wallet_id: str) -> List[WalletAdoptionStage]:
        rows = await self._fetch(
            """
            SELECT wallet_id, stage_name, achieved_at, time_to_achieve_hours, conversion_probability
            FROM wallet_adoption_stages WHERE wallet_id = $1
            """,
            wallet_id,
        )
        return sorted((_stage(r) for r in rows), key=lambda s: STAGE_INDEX[s.stage])

    async def ensure_stage_rows(self, stages: List[WalletAdoptionStage]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO wallet_adoption_stages
                        (wallet_id, stage_name, achieved_at, time_to_achieve_hours, conversion_probability)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (wallet_id, stage_name) DO NOTHING
                    """,
                    [
                        (s.wallet_id, s.stage.value, s.achieved_at, s.time_to_achieve_hours, s.conversion_probability)
                        for s in stages
                    ],
                )

    async def mark_stage_achieved(self, stage: WalletAdoptionStage) -> bool:
        status = await self._execute(
            """
            UPDATE wallet_adoption_stages
            SET achieved_at = $3, time_to_achieve_hours = $4, conversion_probability = $5, updated_at = NOW()
            WHERE wallet_id = $1 AND stage_name = $2 AND achieved_at IS NULL
            """,
            stage.wallet_id, stage.stage.value, stage.achieved_at,
            stage.time_to_achieve_hours, stage.conversion_probability,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return status.split()[-1] != "0"

    async def get_project_stages(self, project_id: str) -> Dict[str, List[WalletAdoptionStage]]:
        rows = await self._fetch(
            """
            SELECT s.wallet_id, s.stage_name, s.achieved_at, s.time_to_achieve_hours, s.conversion_probability
            FROM wallet_adoption_stages s
            JOIN wallets w ON w.wallet_id = s.wallet_id
            WHERE w.project_id = $1
            """,
            project_id,
        )
        result: Dict[str, List[WalletAdoptionStage]] = {}
        for row in rows:
            result.setdefault(row["wallet_id"], []).append(_stage(row))
        for stages in result.values():
            stages.sort(key=lambda s: STAGE_INDEX[s.stage])
        return result

    # Cohorts

    async def get_or_create_cohort(self, cohort_type: CohortType, period: date) -> WalletCohort:
        row = await self._fetchrow(
            f"""
            INSERT INTO wallet_cohorts (cohort_type, cohort_period)
            VALUES ($1, $2)
            ON CONFLICT (cohort_type, cohort_period) DO UPDATE SET updated_at = NOW()
            RETURNING {COHORT_COLUMNS}
            """,
            cohort_type.value, period,
        )
        return _cohort(row)

    async def get_cohort(self, cohort_id: int) -> Optional[WalletCohort]:
        row = await self._fetchrow(f"SELECT {COHORT_COLUMNS} FROM wallet_cohorts WHERE cohort_id = $1", cohort_id)
        return _cohort(row) if row else None

    async def list_cohorts(self, cohort_type: Optional[CohortType] = None,
                           limit: Optional[int] = None) -> List[WalletCohort]:
        rows = await self._fetch(
            f"""
            SELECT {COHORT_COLUMNS} FROM wallet_cohorts
            WHERE $1::varchar IS NULL OR cohort_type = $1
            ORDER BY cohort_period DESC, cohort_type DESC
            LIMIT $2
            """,
            cohort_type.value if cohort_type else None, limit,
        )
        return [_cohort(r) for r in rows]

    async def get_wallet_assignment(self, wallet_id: str,
                                    cohort_type: CohortType) -> Optional[WalletCohortAssignment]:
        row = await self._fetchrow(
            """
            SELECT wallet_id, cohort_id, cohort_type, assigned_at FROM wallet_cohort_assignments
            WHERE wallet_id = $1 AND cohort_type = $2
            """,
            wallet_id, cohort_type.value,
        )
        if not row:
            return None
        return WalletCohortAssignment(row["wallet_id"], row["cohort_id"], CohortType(row["cohort_type"]), row["assigned_at"])

    async def assign_wallet(self, wallet_id: str, cohort: WalletCohort) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    """
                    INSERT INTO wallet_cohort_assignments (wallet_id, cohort_id, cohort_type)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (wallet_id, cohort_type) DO NOTHING
                    RETURNING cohort_id
                    """,
                    wallet_id, cohort.cohort_id, cohort.cohort_type.value,
                )
                if inserted is None:
                    return False
                await conn.execute(
                    """
                    UPDATE wallet_cohorts
                    SET actual_wallet_count = actual_wallet_count + 1, updated_at = NOW()
                    WHERE cohort_id = $1
                    """,
                    cohort.cohort_id,
                )
        return True

    async def get_cohort_wallet_ids(self, cohort_id: int) -> List[str]:
        rows = await self._fetch(
            "SELECT wallet_id FROM wallet_cohort_assignments WHERE cohort_id = $1 ORDER BY wallet_id",
            cohort_id,
        )
        return [r["wallet_id"] for r in rows]

    async def update_cohort_retention(self, cohort_id: int, retention: Dict[int, Optional[float]]) -> None:
        weeks = sorted(w for w in retention if 1 <= w <= 4)
        if not weeks:
            return
        assignments = ", ".join(f"retention_week_{w} = ${i + 2}" for i, w in enumerate(weeks))
        await self._execute(
            f"UPDATE wallet_cohorts SET {assignments}, updated_at = NOW() WHERE cohort_id = $1",
            cohort_id, *[retention[w] for w in weeks],
        )

    async def get_unassigned_wallets(self, cohort_type: CohortType) -> List[Wallet]:
        columns = ", ".join(f"w.{c}" for c in WALLET_COLUMNS.split(", "))
        rows = await self._fetch(
            f"""
            SELECT {columns}
            FROM wallets w
            LEFT JOIN wallet_cohort_assignments a
                ON a.wallet_id = w.wallet_id AND a.cohort_type = $1
            WHERE a.wallet_id IS NULL
            ORDER BY w.created_at, w.wallet_id
            """,
            cohort_type.value,
        )
        return [_wallet(r) for r in rows]

    async def get_wallets_created_between(self, start: datetime, end: datetime) -> List[Wallet]:
        rows = await self._fetch(
            f"""
            SELECT {WALLET_COLUMNS} FROM wallets
            WHERE created_at >= $1 AND created_at < $2
            ORDER BY created_at, wallet_id
            """,
            start, end,
        )
        return [_wallet(r) for r in rows]

    # Productivity scores

    async def save_productivity_score(self, score: ProductivityScore) -> None:
        await self._execute(
            f"""
            INSERT INTO wallet_productivity_scores ({SCORE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (wallet_id) DO UPDATE SET
                retention_score = EXCLUDED.retention_score,
                adoption_score = EXCLUDED.adoption_score,
                activity_score = EXCLUDED.activity_score,
                diversity_score = EXCLUDED.diversity_score,
                total_score = EXCLUDED.total_score,
                status = EXCLUDED.status,
                risk_level = EXCLUDED.risk_level,
                calculated_at = EXCLUDED.calculated_at
            """,
            score.wallet_id, score.retention_score, score.adoption_score, score.activity_score,
            score.diversity_score, score.total_score, score.status, score.risk_level, score.calculated_at,
        )

    async def get_productivity_score(self, wallet_id: str) -> Optional[ProductivityScore]:
        row = await self._fetchrow(
            f"SELECT {SCORE_COLUMNS} FROM wallet_productivity_scores WHERE wallet_id = $1", wallet_id
        )
        return _score(row) if row else None

    async def get_project_scores(self, project_id: str) -> List[ProductivityScore]:
        columns = ", ".join(f"s.{c}" for c in SCORE_COLUMNS.split(", "))
        rows = await self._fetch(
            f"""
            SELECT {columns}
            FROM wallet_productivity_scores s
            JOIN wallets w ON w.wallet_id = s.wallet_id
            WHERE w.project_id = $1
            ORDER BY w.created_at, s.wallet_id
            """,
            project_id,
        )
        return [_score(r) for r in rows]

    # Grants

    async def add_grant(self, grant: DataAccessGrant) -> None:
        await self._execute(
            """
            INSERT INTO data_access_grants (buyer_id, wallet_id, granted_at, expires_at)
            VALUES ($1, $2, $3, $4)
            """,
            grant.buyer_id, grant.wallet_id, grant.granted_at, grant.expires_at,
        )

    async def get_access_grant(self, buyer_id: str, wallet_id: str) -> Optional[DataAccessGrant]:
        row = await self._fetchrow(
            """
            SELECT buyer_id, wallet_id, granted_at, expires_at FROM data_access_grants
            WHERE buyer_id = $1 AND wallet_id = $2
            ORDER BY expires_at DESC
            LIMIT 1
            """,
            buyer_id, wallet_id,
        )
        return DataAccessGrant(row["buyer_id"], row["wallet_id"], row["granted_at"], row["expires_at"]) if row else None
