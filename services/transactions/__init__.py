"""Transaction classification and ingestion."""

from services.transactions.classifier import AddressBook, TransactionClassifier, TransactionFeatures
from services.transactions.indexer_client import IndexerClient, IndexerError, TransactionSource
from services.transactions.ingestion import SyncResult, TransactionIngestionService
from services.transactions.models import RawTransaction, TxInput, TxOutput

__all__ = [
    "AddressBook",
    "IndexerClient",
    "IndexerError",
    "RawTransaction",
    "SyncResult",
    "TransactionClassifier",
    "TransactionFeatures",
    "TransactionIngestionService",
    "TransactionSource",
    "TxInput",
    "TxOutput",
]
