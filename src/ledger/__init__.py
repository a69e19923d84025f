"""
Ledger-side record store for access-controlled decryption.

A single versioned document holds the authorization registry (owner and
current decryptor), the per-id records and the append-only event log.
`RecordStore` enforces every authorization rule when a signed transaction
is committed; `LedgerClient` signs and sends transactions for one identity.
"""

from .client import LedgerClient
from .errors import (
    AlreadyDeployed,
    InvalidSignature,
    LedgerError,
    NotDeployed,
    NotFound,
    ReplayedTransaction,
    StateConflict,
    TransactionAborted,
    Unauthorized,
)
from .models import (
    CipherStored,
    DecryptionRequested,
    DecryptionSubmitted,
    DecryptorUpdated,
    LedgerState,
    Receipt,
    Record,
    Transaction,
)
from .record_store import RecordStore

__all__ = [
    "AlreadyDeployed",
    "CipherStored",
    "DecryptionRequested",
    "DecryptionSubmitted",
    "DecryptorUpdated",
    "InvalidSignature",
    "LedgerClient",
    "LedgerError",
    "LedgerState",
    "NotDeployed",
    "NotFound",
    "Receipt",
    "Record",
    "RecordStore",
    "ReplayedTransaction",
    "StateConflict",
    "Transaction",
    "TransactionAborted",
    "Unauthorized",
]
