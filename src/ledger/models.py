from __future__ import annotations

import hashlib
import json
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Record(BaseModel):
    """
    One stored ciphertext and, once accepted, its decryption result.

    Fields
    - ciphertext: opaque blob, hex encoded with a `0x` prefix.
    - submitter: identity that stored the ciphertext.
    - plaintext: decryption result; None until a result is accepted.
    - result_submitter: decryptor identity that submitted the result.
    - requests: number of accepted decryption requests.
    """

    ciphertext: str
    submitter: str
    plaintext: Optional[str] = None
    result_submitter: Optional[str] = None
    requests: int = 0

    @property
    def decrypted(self) -> bool:
        return self.plaintext is not None

    def ciphertext_bytes(self) -> bytes:
        return bytes.fromhex(self.ciphertext[2:])


class _EventBase(BaseModel):
    seq: int = Field(..., ge=1, description="Position in the ledger event log")
    tx_hash: str = Field(..., description="Hash of the transaction that emitted it")


class CipherStored(_EventBase):
    kind: Literal["CipherStored"] = "CipherStored"
    id: str
    submitter: str


class DecryptionRequested(_EventBase):
    kind: Literal["DecryptionRequested"] = "DecryptionRequested"
    id: str
    requester: str


class DecryptionSubmitted(_EventBase):
    kind: Literal["DecryptionSubmitted"] = "DecryptionSubmitted"
    id: str
    plaintext: str
    submitter: str


class DecryptorUpdated(_EventBase):
    kind: Literal["DecryptorUpdated"] = "DecryptorUpdated"
    old_decryptor: str
    new_decryptor: str


Event = Annotated[
    Union[CipherStored, DecryptionRequested, DecryptionSubmitted, DecryptorUpdated],
    Field(discriminator="kind"),
]

EVENT_KINDS = ("CipherStored", "DecryptionRequested", "DecryptionSubmitted", "DecryptorUpdated")


class LedgerState(BaseModel):
    """
    The whole ledger document: authorization registry, records and event log.

    `decryptor_version` starts at 1 and is bumped on every rotation. Events
    are append-only and their `seq` equals their 1-based position.
    """

    owner: str
    decryptor: str
    decryptor_version: int = 1
    records: Dict[str, Record] = Field(default_factory=dict)
    events: List[Event] = Field(default_factory=list)

    def next_seq(self) -> int:
        return len(self.events) + 1

    def committed(self, tx_hash: str) -> bool:
        return any(e.tx_hash == tx_hash for e in self.events)


Method = Literal[
    "store_ciphertext",
    "request_decryption",
    "submit_decryption_result",
    "set_decryptor",
]


class Transaction(BaseModel):
    """
    A signed state-changing call.

    The signature covers the canonical JSON of every other field, so the
    sender, method, arguments and nonce cannot be altered after signing.
    """

    method: Method
    args: Dict[str, str] = Field(default_factory=dict)
    sender: str
    nonce: str
    signature: str = ""

    def signing_payload(self) -> bytes:
        return json.dumps(
            self.model_dump(exclude={"signature"}), separators=(",", ":"), sort_keys=True
        ).encode("utf-8")

    @property
    def tx_hash(self) -> str:
        return "0x" + hashlib.sha256(self.signing_payload()).hexdigest()


class Receipt(BaseModel):
    """Confirmation that a transaction was durably committed."""

    tx_hash: str
    sender: str
    method: Method
    events: List[Event] = Field(default_factory=list)
    version: Optional[str] = None


__all__ = [
    "CipherStored",
    "DecryptionRequested",
    "DecryptionSubmitted",
    "DecryptorUpdated",
    "EVENT_KINDS",
    "Event",
    "LedgerState",
    "Receipt",
    "Record",
    "Transaction",
]
