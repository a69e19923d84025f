from __future__ import annotations


class LedgerError(RuntimeError):
    """Base error for rejected ledger transactions and reads."""


class Unauthorized(LedgerError):
    """Caller identity does not hold the role the operation requires."""


class NotFound(LedgerError):
    """No ciphertext has been stored under the referenced id."""


class StateConflict(LedgerError):
    """The record is already in a state that forbids the write (first write wins)."""


class InvalidSignature(LedgerError):
    """Transaction signature does not verify against the declared sender."""


class ReplayedTransaction(LedgerError):
    """A transaction with the same hash was already committed."""


class NotDeployed(LedgerError):
    """The backing state document does not exist yet."""


class AlreadyDeployed(LedgerError):
    """Deploy was called against a backend that already holds a ledger."""


class TransactionAborted(LedgerError):
    """Concurrent commits kept invalidating the transaction; retries exhausted."""


__all__ = [
    "AlreadyDeployed",
    "InvalidSignature",
    "LedgerError",
    "NotDeployed",
    "NotFound",
    "ReplayedTransaction",
    "StateConflict",
    "TransactionAborted",
    "Unauthorized",
]
