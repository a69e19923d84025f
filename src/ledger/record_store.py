from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union

from common.identity import normalize_identity, verify_signature
from state.codec import OptimisticLockError

from .errors import (
    AlreadyDeployed,
    InvalidSignature,
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
    Event,
    LedgerState,
    Receipt,
    Record,
    Transaction,
)


logger = logging.getLogger(__name__)

RecordId = Union[int, str]


class StateBackend(Protocol):
    def read(self) -> Tuple[Optional[LedgerState], Optional[str]]: ...

    def write(self, document: LedgerState, *, if_match: Optional[str] = None) -> str: ...


def normalize_record_id(value: RecordId) -> str:
    """Ids are opaque strings; non-negative integers are accepted and stringified."""
    if isinstance(value, bool):
        raise ValueError("record id must be a string or integer")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("record id must be non-negative")
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValueError("record id must be a non-empty string or non-negative integer")


def normalize_ciphertext(value: Union[bytes, bytearray, str]) -> str:
    """Return the ciphertext as `0x`-prefixed lowercase hex; reject empty or non-hex input."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        text = value.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError as ex:
            raise ValueError("ciphertext must be hex encoded") from ex
    else:
        raise ValueError("ciphertext must be bytes or a hex string")
    if not raw:
        raise ValueError("ciphertext must not be empty")
    return "0x" + raw.hex()


def _arg(tx: Transaction, name: str) -> str:
    try:
        return tx.args[name]
    except KeyError:
        raise ValueError(f"{tx.method}: missing argument {name!r}") from None


def _existing(state: LedgerState, record_id: str) -> Record:
    record = state.records.get(record_id)
    if record is None:
        raise NotFound(f"no ciphertext stored for id {record_id}")
    return record


# -------- State transitions (applied to a working copy) --------
def _store_ciphertext(state: LedgerState, tx: Transaction) -> Event:
    record_id = normalize_record_id(_arg(tx, "id"))
    ciphertext = normalize_ciphertext(_arg(tx, "ciphertext"))
    if record_id in state.records:
        raise StateConflict(f"ciphertext already stored for id {record_id}")
    state.records[record_id] = Record(ciphertext=ciphertext, submitter=tx.sender)
    return CipherStored(seq=state.next_seq(), tx_hash=tx.tx_hash, id=record_id, submitter=tx.sender)


def _request_decryption(state: LedgerState, tx: Transaction) -> Event:
    record_id = normalize_record_id(_arg(tx, "id"))
    record = _existing(state, record_id)
    record.requests += 1
    return DecryptionRequested(seq=state.next_seq(), tx_hash=tx.tx_hash, id=record_id, requester=tx.sender)


def _submit_decryption_result(state: LedgerState, tx: Transaction) -> Event:
    if tx.sender != state.decryptor:
        raise Unauthorized("decryptor only")
    record_id = normalize_record_id(_arg(tx, "id"))
    plaintext = _arg(tx, "plaintext")
    record = _existing(state, record_id)
    if record.decrypted:
        raise StateConflict(f"result already submitted for id {record_id}")
    record.plaintext = plaintext
    record.result_submitter = tx.sender
    return DecryptionSubmitted(
        seq=state.next_seq(), tx_hash=tx.tx_hash, id=record_id, plaintext=plaintext, submitter=tx.sender
    )


def _set_decryptor(state: LedgerState, tx: Transaction) -> Event:
    if tx.sender != state.owner:
        raise Unauthorized("owner only")
    new = normalize_identity(_arg(tx, "decryptor"))
    old = state.decryptor
    state.decryptor = new
    state.decryptor_version += 1
    return DecryptorUpdated(seq=state.next_seq(), tx_hash=tx.tx_hash, old_decryptor=old, new_decryptor=new)


_TRANSITIONS: Dict[str, Callable[[LedgerState, Transaction], Event]] = {
    "store_ciphertext": _store_ciphertext,
    "request_decryption": _request_decryption,
    "submit_decryption_result": _submit_decryption_result,
    "set_decryptor": _set_decryptor,
}


class RecordStore:
    """
    The ledger-side state machine.

    Every mutating call is a signed `Transaction` executed atomically:
    read the current document and its version, apply the transition to a
    copy, then commit with a conditional write. Authorization checks run
    against the same snapshot that the write is conditioned on, so a
    concurrent rotation of the decryptor forces re-execution instead of a
    stale-read acceptance. A rejected transaction never writes.

    Reads (`get_ciphertext`, `get_result`, `events`, ...) are pure and
    always load the latest committed document.
    """

    def __init__(self, backend: StateBackend, *, max_retries: int = 8) -> None:
        self._backend = backend
        self._max_retries = max(1, max_retries)

    @classmethod
    def deploy(cls, backend: StateBackend, *, owner: str, decryptor: str, **kwargs) -> "RecordStore":
        """Initialize an empty ledger owned by `owner` with `decryptor` as the authorized submitter."""
        existing, _ = backend.read()
        if existing is not None:
            raise AlreadyDeployed("a ledger is already deployed on this backend")
        state = LedgerState(owner=normalize_identity(owner), decryptor=normalize_identity(decryptor))
        backend.write(state)
        logger.info("Deployed ledger owner=%s decryptor=%s", state.owner, state.decryptor)
        return cls(backend, **kwargs)

    # -------- Transactions --------
    def execute(self, tx: Transaction) -> Receipt:
        """Authenticate, apply and durably commit `tx`; returns the receipt.

        Raises a `LedgerError` subclass (or ValueError for malformed
        arguments) when the transaction is rejected; state is then unchanged.
        """
        self._authenticate(tx)
        transition = _TRANSITIONS[tx.method]
        tx_hash = tx.tx_hash

        for attempt in range(1, self._max_retries + 1):
            state, version = self._load()
            if state.committed(tx_hash):
                raise ReplayedTransaction(f"transaction {tx_hash} already committed")
            working = state.model_copy(deep=True)
            event = transition(working, tx)
            working.events.append(event)
            try:
                new_version = self._backend.write(working, if_match=version)
            except OptimisticLockError:
                logger.debug("Commit conflict for %s (attempt %d/%d)", tx_hash, attempt, self._max_retries)
                continue
            logger.info("Committed %s seq=%d sender=%s", event.kind, event.seq, tx.sender)
            return Receipt(tx_hash=tx_hash, sender=tx.sender, method=tx.method, events=[event], version=new_version)

        raise TransactionAborted(f"gave up on {tx.method} after {self._max_retries} conflicting commits")

    @staticmethod
    def _authenticate(tx: Transaction) -> None:
        try:
            canonical = normalize_identity(tx.sender)
        except ValueError as ex:
            raise InvalidSignature(f"malformed sender {tx.sender!r}") from ex
        if canonical != tx.sender:
            raise InvalidSignature("sender must be in canonical form")
        if not verify_signature(tx.sender, tx.signing_payload(), tx.signature):
            raise InvalidSignature(f"signature does not match sender {tx.sender}")

    def _load(self) -> Tuple[LedgerState, Optional[str]]:
        state, version = self._backend.read()
        if state is None:
            raise NotDeployed("no ledger deployed on this backend")
        return state, version

    # -------- Reads --------
    def snapshot(self) -> LedgerState:
        return self._load()[0]

    @property
    def owner(self) -> str:
        return self.snapshot().owner

    @property
    def decryptor(self) -> str:
        return self.snapshot().decryptor

    def get_record(self, record_id: RecordId) -> Optional[Record]:
        return self.snapshot().records.get(normalize_record_id(record_id))

    def get_ciphertext(self, record_id: RecordId) -> Optional[bytes]:
        record = self.get_record(record_id)
        return record.ciphertext_bytes() if record is not None else None

    def get_result(self, record_id: RecordId) -> Optional[str]:
        record = self.get_record(record_id)
        return record.plaintext if record is not None else None

    def events(
        self,
        *,
        after_seq: int = 0,
        kinds: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Return committed events with `seq > after_seq`, oldest first."""
        wanted = set(kinds) if kinds is not None else None
        out: List[Event] = []
        for event in self.snapshot().events[max(after_seq, 0):]:
            if wanted is not None and event.kind not in wanted:
                continue
            out.append(event)
            if limit is not None and len(out) >= limit:
                break
        return out


__all__ = ["RecordStore", "StateBackend", "normalize_ciphertext", "normalize_record_id"]
