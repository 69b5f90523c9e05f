"""
Privacy enforcement for wallet-level data.

Modes and what leaves the owning project:

- private: nothing. Only the owning project's context sees the data.
- public: anonymized metrics only (identifiers stripped, ``anonymized: True``).
- monetizable: nothing, unless the reader holds an active DataAccessGrant for the
  wallet or its project, in which case full metrics (no raw transactions) for the
  grant's lifetime.

``release`` is the only path by which wallet-level records leave this module.
The privacy mode is read from the store on every call and never cached here.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import structlog

from services.errors import (
    InvalidTransitionError,
    NotFoundError,
    PrivacyViolationError,
    UpstreamUnavailableError,
)
from services.storage.models import (
    DataAccessGrant,
    MonetizationConfig,
    PrivacyAuditEntry,
    PrivacyMode,
    Wallet,
    utcnow,
)
from services.storage.repository import AnalyticsRepository, GrantSource
from wallet_analytics.common.logging_setup import audit_event

logger = structlog.get_logger()

IDENTIFYING_FIELDS = frozenset({
    "id", "wallet_id", "address", "user_id", "project_id", "owner_id", "payout_address",
})

# Numeric metrics kept by anonymization; missing ones default to 0
NUMERIC_METRICS = (
    "active_days",
    "transaction_count",
    "total_volume_zatoshi",
    "total_score",
    "retention_score",
    "adoption_score",
    "activity_score",
    "diversity_score",
)
CATEGORICAL_METRICS = ("current_stage", "status", "risk_level", "cohort_week", "cohort_month")

RAW_FIELDS = frozenset({"transactions", "raw_transactions"})

ANONYMIZED_NOTE = "Data is anonymized for privacy protection"


class View:
    FULL = "full"
    METRICS = "metrics"
    ANONYMIZED = "anonymized"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class Requester:
    """Who is reading: the owning project, an external buyer, or neither."""
    project_id: Optional[str] = None
    buyer_id: Optional[str] = None

    def owns(self, wallet: Wallet) -> bool:
        return self.project_id is not None and self.project_id == wallet.project_id

    @property
    def cache_key(self) -> str:
        return f"project={self.project_id or ''};buyer={self.buyer_id or ''}"


@dataclass
class AccessDecision:
    allowed: bool
    reason: str
    data_level: Optional[str] = None
    requires_payment: bool = False
    expires_at: Optional[datetime] = None


@dataclass
class PrivacyTransition:
    valid: bool
    requires_setup: bool
    message: str = ""


def anonymize(record: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Strip identifiers from a wallet record, keeping derived metrics only.

    Args:
        record: Flat wallet record, optionally with a nested ``metrics`` mapping

    Returns:
        ``{"wallet_type"?, "metrics": {...}, "anonymized": True, "note": ...}``
    """
    source: Dict[str, Any] = {}
    nested = record.get("metrics")
    if isinstance(nested, Mapping):
        source.update(nested)
    source.update({k: v for k, v in record.items() if k != "metrics"})

    metrics: Dict[str, Any] = {}
    for name in NUMERIC_METRICS:
        value = source.get(name)
        metrics[name] = value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0
    for name in CATEGORICAL_METRICS:
        value = source.get(name)
        if isinstance(value, str):
            metrics[name] = value

    result: Dict[str, Any] = {}
    wallet_type = source.get("wallet_type") or source.get("type")
    if isinstance(wallet_type, str):
        result["wallet_type"] = wallet_type
    result["metrics"] = metrics
    result["anonymized"] = True
    result["note"] = ANONYMIZED_NOTE
    return result


def anonymize_batch(records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [anonymize(record) for record in records]


def _parse_mode(mode: Union[PrivacyMode, str]) -> Optional[PrivacyMode]:
    try:
        return PrivacyMode(mode)
    except ValueError:
        return None


def validate_privacy_transition(current: Union[PrivacyMode, str], new: Union[PrivacyMode, str]) -> PrivacyTransition:
    """Any change between known modes is valid; monetizable needs a payout setup step."""
    if _parse_mode(current) is None:
        return PrivacyTransition(valid=False, requires_setup=False, message=f"Invalid privacy mode: {current}")
    target = _parse_mode(new)
    if target is None:
        return PrivacyTransition(valid=False, requires_setup=False, message=f"Invalid privacy mode: {new}")
    if target == PrivacyMode.MONETIZABLE:
        return PrivacyTransition(
            valid=True, requires_setup=True, message="Monetizable mode requires payout configuration"
        )
    return PrivacyTransition(valid=True, requires_setup=False)


class PrivacyEnforcementService:
    """Decides and applies what each reader may see of each wallet."""

    def __init__(
        self,
        store: AnalyticsRepository,
        grants: Optional[GrantSource] = None,
        grant_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.grants = grants or store
        self.grant_timeout = grant_timeout
        self.clock = clock
        self._listeners: List[Callable[[Wallet], None]] = []
        self.logger = logger.bind(component="privacy_enforcement")

    anonymize = staticmethod(anonymize)
    anonymize_batch = staticmethod(anonymize_batch)
    validate_privacy_transition = staticmethod(validate_privacy_transition)

    def on_mode_change(self, listener: Callable[[Wallet], None]) -> None:
        """Register a callback run after a wallet's privacy mode changes."""
        self._listeners.append(listener)

    async def _get_wallet(self, wallet_id: str) -> Wallet:
        wallet = await self.store.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError("wallet", wallet_id)
        return wallet

    async def _lookup_grant(self, buyer_id: str, wallet: Wallet) -> Optional[DataAccessGrant]:
        """Active grant on the wallet or its project; an expired one only if neither is active."""
        async def lookup():
            found = [
                await self.grants.get_access_grant(buyer_id, wallet.wallet_id),
                await self.grants.get_access_grant(buyer_id, wallet.project_id),
            ]
            found = [g for g in found if g is not None]
            now = self.clock()
            for grant in found:
                if grant.is_active(now):
                    return grant
            return found[0] if found else None

        try:
            return await asyncio.wait_for(lookup(), timeout=self.grant_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            raise UpstreamUnavailableError(f"grant lookup failed: {e.__class__.__name__}") from e

    async def check_access(self, buyer_id: str, wallet_id: str,
                           project_id: Optional[str] = None) -> AccessDecision:
        """
        Whether ``buyer_id`` may read ``wallet_id`` and at what level.

        Args:
            buyer_id: Reader identity
            wallet_id: Wallet being read
            project_id: Reader's own project, if any (owners always have full access)

        Raises:
            NotFoundError: If the wallet does not exist
        """
        wallet = await self._get_wallet(wallet_id)
        return await self._decide(wallet, Requester(project_id=project_id, buyer_id=buyer_id))

    async def _decide(self, wallet: Wallet, requester: Requester) -> AccessDecision:
        if requester.owns(wallet):
            return AccessDecision(True, "Owner access", data_level=View.FULL)
        if wallet.privacy_mode == PrivacyMode.PRIVATE:
            return AccessDecision(False, "Wallet is private")
        if wallet.privacy_mode == PrivacyMode.PUBLIC:
            return AccessDecision(True, "Wallet is public", data_level=View.ANONYMIZED)

        if not requester.buyer_id:
            return AccessDecision(False, "Payment required for monetizable data", requires_payment=True)

        try:
            grant = await self._lookup_grant(requester.buyer_id, wallet)
        except UpstreamUnavailableError as e:
            self.logger.warning("grant_lookup_failed", error=str(e))
            return AccessDecision(False, "Grant lookup unavailable")

        now = self.clock()
        if grant is not None and grant.is_active(now):
            decision = AccessDecision(True, "Active data access grant", data_level=View.METRICS,
                                      expires_at=grant.expires_at)
        elif grant is not None:
            decision = AccessDecision(False, "Data access grant expired", requires_payment=True)
        else:
            decision = AccessDecision(False, "Payment required for monetizable data", requires_payment=True)

        audit_event("monetizable_access_checked", wallet_id=wallet.wallet_id, buyer_id=requester.buyer_id,
                    allowed=decision.allowed, reason=decision.reason)
        return decision

    async def resolve_view(self, wallet: Wallet, requester: Requester) -> str:
        decision = await self._decide(wallet, requester)
        return decision.data_level if decision.allowed else View.EXCLUDED

    async def release(self, records: Iterable[Mapping[str, Any]], requester: Requester) -> List[Dict[str, Any]]:
        """
        Filter and shape wallet records for a reader.

        Records the reader may not see are dropped; the rest keep their order.

        Raises:
            PrivacyViolationError: If a record cannot be attributed to a known wallet
        """
        released = []
        wallets: Dict[str, Wallet] = {}
        for record in records:
            wallet_id = record.get("wallet_id")
            if not wallet_id:
                raise PrivacyViolationError("record without wallet_id cannot be released")
            if wallet_id not in wallets:
                wallet = await self.store.get_wallet(wallet_id)
                if wallet is None:
                    raise PrivacyViolationError("record for unknown wallet cannot be released")
                wallets[wallet_id] = wallet

            view = await self.resolve_view(wallets[wallet_id], requester)
            if view == View.FULL:
                released.append(dict(record))
            elif view == View.METRICS:
                released.append({k: v for k, v in record.items() if k not in RAW_FIELDS})
            elif view == View.ANONYMIZED:
                released.append(anonymize(record))
        return released

    async def set_privacy_mode(
        self,
        wallet_id: str,
        mode: Union[PrivacyMode, str],
        payout_address: Optional[str] = None,
    ) -> Wallet:
        """
        Change a wallet's privacy mode, effective for every subsequent read.

        Args:
            wallet_id: Wallet to update
            mode: Target mode
            payout_address: Required when moving to monetizable without an existing config

        Raises:
            InvalidTransitionError: Unknown mode, or monetizable without payout setup
            NotFoundError: If the wallet does not exist
        """
        target = _parse_mode(mode)
        if target is None:
            raise InvalidTransitionError(f"Invalid privacy mode: {mode}")

        wallet = await self._get_wallet(wallet_id)
        transition = validate_privacy_transition(wallet.privacy_mode, target)
        if not transition.valid:
            raise InvalidTransitionError(transition.message)

        now = self.clock()
        if transition.requires_setup and await self.store.get_monetization_config(wallet_id) is None:
            if not payout_address:
                raise InvalidTransitionError(transition.message)
            await self.store.save_monetization_config(
                MonetizationConfig(wallet_id=wallet_id, payout_address=payout_address, configured_at=now)
            )

        previous = wallet.privacy_mode
        await self.store.update_privacy_mode(wallet_id, target, now)
        await self.store.record_privacy_change(
            PrivacyAuditEntry(wallet_id=wallet_id, previous_mode=previous, new_mode=target, changed_at=now)
        )
        audit_event("privacy_mode_changed", wallet_id=wallet_id,
                    previous_mode=previous.value, new_mode=target.value)

        wallet.privacy_mode = target
        wallet.privacy_updated_at = now
        for listener in self._listeners:
            listener(wallet)

        self.logger.info("privacy_mode_changed", previous_mode=previous.value, new_mode=target.value)
        return wallet

    async def get_privacy_stats(self, project_id: str) -> Dict[str, int]:
        wallets = await self.store.get_project_wallets(project_id)
        counts = Counter(w.privacy_mode.value for w in wallets)
        stats = {mode.value: counts.get(mode.value, 0) for mode in PrivacyMode}
        stats["total"] = len(wallets)
        return stats

    async def get_privacy_history(self, wallet_id: str) -> List[PrivacyAuditEntry]:
        await self._get_wallet(wallet_id)
        return await self.store.get_privacy_history(wallet_id)
