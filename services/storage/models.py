"""Entities persisted by the analytics engine."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Optional


class PrivacyMode(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"
    MONETIZABLE = "monetizable"


class CohortType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TransactionType(str, Enum):
    TRANSFER = "transfer"
    SWAP = "swap"
    BRIDGE = "bridge"
    SHIELDED = "shielded"
    CONTRACT = "contract"
    MINT = "mint"
    BURN = "burn"


class TransactionSubtype(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    SELF = "self"
    MULTI_PARTY = "multi_party"


class CounterpartyType(str, Enum):
    WALLET = "wallet"
    EXCHANGE = "exchange"
    DEFI = "defi"
    BRIDGE = "bridge"
    UNKNOWN = "unknown"


class AdoptionStage(str, Enum):
    CREATED = "created"
    FIRST_TX = "first_tx"
    FEATURE_USAGE = "feature_usage"
    RECURRING = "recurring"
    HIGH_VALUE = "high_value"


# Funnel order; every stage sequencing decision reads this tuple
FUNNEL_STAGES = (
    AdoptionStage.CREATED,
    AdoptionStage.FIRST_TX,
    AdoptionStage.FEATURE_USAGE,
    AdoptionStage.RECURRING,
    AdoptionStage.HIGH_VALUE,
)

STAGE_INDEX = {stage: i for i, stage in enumerate(FUNNEL_STAGES)}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Wallet:
    """A project-owned wallet."""
    wallet_id: str
    project_id: str
    address: str
    created_at: datetime
    privacy_mode: PrivacyMode = PrivacyMode.PRIVATE
    privacy_updated_at: Optional[datetime] = None
    is_active: bool = True


@dataclass
class ProcessedTransaction:
    """One transaction classified from the perspective of one wallet."""
    wallet_id: str
    txid: str
    block_height: int
    block_time: datetime
    tx_type: TransactionType
    tx_subtype: TransactionSubtype
    value_zatoshi: int
    fee_zatoshi: int = 0
    counterparty_address: Optional[str] = None
    counterparty_type: CounterpartyType = CounterpartyType.UNKNOWN
    feature_used: Optional[str] = None
    is_shielded: bool = False
    shielded_pool_entry: bool = False
    shielded_pool_exit: bool = False
    complexity_score: int = 0
    sequence_position: int = 0
    time_since_previous_tx_minutes: Optional[int] = None

    @property
    def activity_date(self) -> date:
        return self.block_time.astimezone(timezone.utc).date()


@dataclass
class WalletActivityMetric:
    """Daily activity rollup for one wallet."""
    wallet_id: str
    activity_date: date
    transaction_count: int = 0
    total_volume_zatoshi: int = 0
    total_fees_paid: int = 0
    transfers_count: int = 0
    swaps_count: int = 0
    bridges_count: int = 0
    shielded_count: int = 0
    is_active: bool = False
    is_returning: bool = False
    days_since_creation: int = 0
    sequence_complexity_score: int = 0


@dataclass
class WalletAdoptionStage:
    """Progress of one wallet through one funnel stage."""
    wallet_id: str
    stage: AdoptionStage
    achieved_at: Optional[datetime] = None
    time_to_achieve_hours: Optional[float] = None
    conversion_probability: Optional[float] = None

    @property
    def achieved(self) -> bool:
        return self.achieved_at is not None


@dataclass
class WalletCohort:
    """A weekly or monthly signup cohort."""
    cohort_id: int
    cohort_type: CohortType
    cohort_period: date
    actual_wallet_count: int = 0
    retention: Dict[int, Optional[float]] = field(
        default_factory=lambda: {1: None, 2: None, 3: None, 4: None}
    )
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class WalletCohortAssignment:
    wallet_id: str
    cohort_id: int
    cohort_type: CohortType
    assigned_at: datetime = field(default_factory=utcnow)


@dataclass
class ProductivityScore:
    """Latest composite productivity score of a wallet."""
    wallet_id: str
    retention_score: float
    adoption_score: float
    activity_score: float
    diversity_score: float
    total_score: float
    status: str
    risk_level: str
    calculated_at: datetime = field(default_factory=utcnow)


@dataclass
class DataAccessGrant:
    """Time-bounded permission for a buyer to read a monetizable wallet's metrics."""
    buyer_id: str
    wallet_id: str
    granted_at: datetime
    expires_at: datetime

    def is_active(self, at: datetime) -> bool:
        return self.granted_at <= at < self.expires_at


@dataclass
class MonetizationConfig:
    wallet_id: str
    payout_address: str
    configured_at: datetime = field(default_factory=utcnow)


@dataclass
class PrivacyAuditEntry:
    wallet_id: str
    previous_mode: PrivacyMode
    new_mode: PrivacyMode
    changed_at: datetime = field(default_factory=utcnow)
