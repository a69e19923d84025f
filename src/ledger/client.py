from __future__ import annotations

from typing import Optional, Union
from uuid import uuid4

from common.identity import Signer

from .models import Receipt, Transaction
from .record_store import RecordId, RecordStore, normalize_ciphertext, normalize_record_id


class LedgerClient:
    """
    Signs and sends transactions to a `RecordStore` on behalf of one identity.

    Each call builds a `Transaction` with a fresh random nonce, signs it and
    returns the `Receipt` once the store confirmed the commit. Reads need no
    signer.
    """

    def __init__(self, store: RecordStore, signer: Optional[Signer] = None) -> None:
        self._store = store
        self._signer = signer

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def identity(self) -> Optional[str]:
        return self._signer.identity if self._signer is not None else None

    def build_transaction(self, method: str, **args: str) -> Transaction:
        if self._signer is None:
            raise RuntimeError("a signer is required to send transactions")
        tx = Transaction(method=method, args=args, sender=self._signer.identity, nonce=uuid4().hex)
        return tx.model_copy(update={"signature": self._signer.sign(tx.signing_payload())})

    def _send(self, method: str, **args: str) -> Receipt:
        return self._store.execute(self.build_transaction(method, **args))

    # -------- Transactions --------
    def store_ciphertext(self, record_id: RecordId, ciphertext: Union[bytes, str]) -> Receipt:
        return self._send(
            "store_ciphertext",
            id=normalize_record_id(record_id),
            ciphertext=normalize_ciphertext(ciphertext),
        )

    def request_decryption(self, record_id: RecordId) -> Receipt:
        return self._send("request_decryption", id=normalize_record_id(record_id))

    def submit_decryption_result(self, record_id: RecordId, plaintext: str) -> Receipt:
        if not isinstance(plaintext, str):
            raise ValueError("plaintext must be a string")
        return self._send("submit_decryption_result", id=normalize_record_id(record_id), plaintext=plaintext)

    def set_decryptor(self, new_decryptor: str) -> Receipt:
        return self._send("set_decryptor", decryptor=new_decryptor)

    # -------- Reads --------
    def get_ciphertext(self, record_id: RecordId) -> Optional[bytes]:
        return self._store.get_ciphertext(record_id)

    def get_result(self, record_id: RecordId) -> Optional[str]:
        return self._store.get_result(record_id)
