"""
Transaction classification from a single wallet's perspective.

Classification is a pure function of the transaction shape:
- Features are extracted once into ``TransactionFeatures``
- ``TYPE_RULES`` is an ordered strategy table; the first matching rule wins
- Counterparty categories come from an injected resolver (address book, registry)
"""

from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

import structlog
from pydantic import ValidationError

from services.errors import MalformedTransactionError
from services.storage.models import (
    CounterpartyType,
    ProcessedTransaction,
    TransactionSubtype,
    TransactionType,
)
from services.transactions.models import RawTransaction

logger = structlog.get_logger()

CounterpartyResolver = Callable[[str], CounterpartyType]

DEFAULT_SHIELDED_PREFIXES = ("z", "u")

# Outputs below this many zatoshi on a fan-out transaction look like relayer fees
BRIDGE_SMALL_OUTPUT_ZATOSHI = 1_000_000
BRIDGE_MIN_OUTPUTS = 4


class AddressBook:
    """Default counterparty resolver backed by known address sets."""

    def __init__(
        self,
        exchanges: Iterable[str] = (),
        defi: Iterable[str] = (),
        bridges: Iterable[str] = (),
        wallets: Iterable[str] = (),
    ):
        self._categories: Dict[str, CounterpartyType] = {}
        for addresses, category in (
            (wallets, CounterpartyType.WALLET),
            (exchanges, CounterpartyType.EXCHANGE),
            (defi, CounterpartyType.DEFI),
            (bridges, CounterpartyType.BRIDGE),
        ):
            for address in addresses:
                self._categories[address] = category

    def add(self, address: str, category: CounterpartyType) -> None:
        self._categories[address] = category

    def resolve_counterparty_type(self, address: Optional[str]) -> CounterpartyType:
        if not address:
            return CounterpartyType.UNKNOWN
        return self._categories.get(address, CounterpartyType.UNKNOWN)

    __call__ = resolve_counterparty_type


@dataclass(frozen=True)
class TransactionFeatures:
    """Shape of one transaction relative to the observing wallet."""
    input_count: int
    output_count: int
    total_in: int
    total_out: int
    wallet_in: int
    wallet_out: int
    wallet_funds_inputs: bool
    wallet_receives_outputs: bool
    other_input_addresses: FrozenSet[str]
    other_output_addresses: FrozenSet[str]
    unique_addresses: int
    has_shielded: bool
    shielded_inputs: bool
    shielded_outputs: bool
    transparent_inputs: bool
    transparent_outputs: bool
    zero_value_outputs: int
    small_outputs: int
    counterparty_address: Optional[str]
    counterparty_type: CounterpartyType

    @property
    def net_value(self) -> int:
        return self.wallet_out - self.wallet_in


TypeRule = Tuple[TransactionType, Callable[[TransactionFeatures], bool]]

TYPE_RULES: List[TypeRule] = [
    (TransactionType.SHIELDED, lambda f: f.has_shielded),
    (TransactionType.BRIDGE, lambda f: f.counterparty_type == CounterpartyType.BRIDGE),
    (TransactionType.SWAP, lambda f: f.counterparty_type == CounterpartyType.DEFI),
    (TransactionType.MINT, lambda f: f.input_count == 0 and f.total_out > 0),
    (TransactionType.BURN, lambda f: f.total_in > 0 and f.total_out == 0),
    (TransactionType.CONTRACT, lambda f: f.zero_value_outputs > 0),
    (TransactionType.BRIDGE, lambda f: f.output_count >= BRIDGE_MIN_OUTPUTS and f.small_outputs > 0),
    # Both parties fund and both receive: an atomic exchange of value
    (TransactionType.SWAP, lambda f: (
        f.wallet_funds_inputs and f.wallet_receives_outputs
        and bool(f.other_input_addresses) and bool(f.other_output_addresses)
    )),
]


def match_type(features: TransactionFeatures, rules: List[TypeRule] = TYPE_RULES) -> TransactionType:
    for tx_type, predicate in rules:
        if predicate(features):
            return tx_type
    return TransactionType.TRANSFER


def match_subtype(features: TransactionFeatures) -> TransactionSubtype:
    others = features.other_input_addresses | features.other_output_addresses
    if features.wallet_funds_inputs and features.wallet_receives_outputs and not others:
        return TransactionSubtype.SELF
    if features.wallet_funds_inputs and features.other_input_addresses:
        return TransactionSubtype.MULTI_PARTY
    if features.wallet_funds_inputs:
        return TransactionSubtype.OUTGOING
    return TransactionSubtype.INCOMING


def complexity_score(features: TransactionFeatures) -> int:
    """Bounded 0-100 ranking signal, non-decreasing in every factor."""
    score = min(features.input_count * 5, 25)
    score += min(features.output_count * 5, 25)
    if features.has_shielded:
        score += 20
    if features.unique_addresses > 2:
        score += min((features.unique_addresses - 2) * 10, 30)
    return min(score, 100)


class TransactionClassifier:
    """Labels raw transactions with type, subtype, counterparty and complexity."""

    def __init__(
        self,
        resolver: Optional[CounterpartyResolver] = None,
        shielded_prefixes: Iterable[str] = DEFAULT_SHIELDED_PREFIXES,
        rules: Optional[List[TypeRule]] = None,
    ):
        self.resolver = resolver or AddressBook()
        self.shielded_prefixes = tuple(shielded_prefixes)
        self.rules = rules or TYPE_RULES
        self.logger = logger.bind(component="transaction_classifier")

    @staticmethod
    def parse(payload: Union[RawTransaction, Dict[str, Any]]) -> RawTransaction:
        """Validate an indexer payload, raising MalformedTransactionError on bad input."""
        if isinstance(payload, RawTransaction):
            return payload
        try:
            return RawTransaction.model_validate(payload)
        except ValidationError as e:
            raise MalformedTransactionError(f"invalid transaction payload: {e.error_count()} errors") from e

    def is_shielded(self, address: str) -> bool:
        return address.startswith(self.shielded_prefixes)

    def extract_features(self, tx: RawTransaction, wallet_address: str) -> TransactionFeatures:
        input_addresses = [i.address for i in tx.inputs]
        output_addresses = [o.address for o in tx.outputs]
        all_addresses = input_addresses + output_addresses

        if wallet_address not in all_addresses:
            raise MalformedTransactionError(f"transaction {tx.txid} does not reference the wallet")

        others = Counter(a for a in all_addresses if a != wallet_address)
        counterparty = others.most_common(1)[0][0] if others else None

        shielded_in = any(self.is_shielded(a) for a in input_addresses)
        shielded_out = any(self.is_shielded(a) for a in output_addresses)

        return TransactionFeatures(
            input_count=len(tx.inputs),
            output_count=len(tx.outputs),
            total_in=sum(i.value for i in tx.inputs),
            total_out=sum(o.value for o in tx.outputs),
            wallet_in=sum(i.value for i in tx.inputs if i.address == wallet_address),
            wallet_out=sum(o.value for o in tx.outputs if o.address == wallet_address),
            wallet_funds_inputs=wallet_address in input_addresses,
            wallet_receives_outputs=wallet_address in output_addresses,
            other_input_addresses=frozenset(a for a in input_addresses if a != wallet_address),
            other_output_addresses=frozenset(a for a in output_addresses if a != wallet_address),
            unique_addresses=len(set(all_addresses)),
            has_shielded=shielded_in or shielded_out,
            shielded_inputs=shielded_in,
            shielded_outputs=shielded_out,
            transparent_inputs=any(not self.is_shielded(a) for a in input_addresses),
            transparent_outputs=any(not self.is_shielded(a) for a in output_addresses),
            zero_value_outputs=sum(1 for o in tx.outputs if o.value == 0),
            small_outputs=sum(1 for o in tx.outputs if 0 < o.value < BRIDGE_SMALL_OUTPUT_ZATOSHI),
            counterparty_address=counterparty,
            counterparty_type=self.resolver(counterparty) if counterparty else CounterpartyType.UNKNOWN,
        )

    def classify(
        self,
        payload: Union[RawTransaction, Dict[str, Any]],
        wallet_address: str,
        wallet_id: Optional[str] = None,
    ) -> ProcessedTransaction:
        """
        Classify one transaction from the perspective of one wallet.

        Args:
            payload: Raw transaction (model or indexer dict)
            wallet_address: Address whose perspective is computed
            wallet_id: Wallet identifier stored on the record (defaults to the address)

        Returns:
            ProcessedTransaction without sequence information

        Raises:
            MalformedTransactionError: If required fields are missing or the wallet is absent
        """
        tx = self.parse(payload)
        features = self.extract_features(tx, wallet_address)

        return ProcessedTransaction(
            wallet_id=wallet_id or wallet_address,
            txid=tx.txid,
            block_height=tx.block_height,
            block_time=tx.block_time,
            tx_type=match_type(features, self.rules),
            tx_subtype=match_subtype(features),
            value_zatoshi=features.net_value,
            fee_zatoshi=tx.fee,
            counterparty_address=features.counterparty_address,
            counterparty_type=features.counterparty_type,
            feature_used=tx.feature,
            is_shielded=features.has_shielded,
            shielded_pool_entry=features.transparent_inputs and features.shielded_outputs,
            shielded_pool_exit=features.shielded_inputs and features.transparent_outputs,
            complexity_score=complexity_score(features),
        )

    def classify_batch(
        self,
        payloads: Iterable[Union[RawTransaction, Dict[str, Any]]],
        wallet_address: str,
        wallet_id: Optional[str] = None,
    ) -> Tuple[List[ProcessedTransaction], List[str]]:
        """Classify many transactions, skipping malformed ones.

        Returns:
            (classified records, descriptions of skipped payloads)
        """
        classified: List[ProcessedTransaction] = []
        skipped: List[str] = []
        seen: Set[str] = set()

        for payload in payloads:
            try:
                record = self.classify(payload, wallet_address, wallet_id)
            except MalformedTransactionError as e:
                skipped.append(str(e))
                continue
            if record.txid in seen:
                continue
            seen.add(record.txid)
            classified.append(record)

        if skipped:
            self.logger.warning("malformed_transactions_skipped", count=len(skipped))

        return classified, skipped
