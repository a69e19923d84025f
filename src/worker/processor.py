from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from common.decryption import DecryptionError, Decryptor
from common.policy import AuthorizationPolicy
from ledger.client import LedgerClient
from ledger.errors import LedgerError, StateConflict
from ledger.models import DecryptionRequested, Receipt


logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUBMITTED = "submitted"
    SKIPPED_MISSING = "skipped_missing"
    ALREADY_DECRYPTED = "already_decrypted"
    DENIED = "denied"
    DECRYPT_FAILED = "decrypt_failed"
    SUBMIT_FAILED = "submit_failed"
    ERROR = "error"


@dataclass(frozen=True)
class RequestResult:
    seq: int
    record_id: str
    requester: str
    outcome: Outcome
    detail: Optional[str] = None


class SubmissionFailure(RuntimeError):
    """The ledger rejected the result or did not confirm the commit."""


class DecryptorWorker:
    """
    Handles `DecryptionRequested` notifications for the authorized decryptor.

    For each request: fetch the ciphertext, ask the policy, decrypt, submit
    the result with the worker's own signed identity and wait for the
    receipt. Every failure is logged and reported as a `RequestResult`;
    nothing raised while handling one request escapes `handle()`, so a bad
    request never stops the polling loop.
    """

    def __init__(
        self,
        client: LedgerClient,
        decryptor: Decryptor,
        policy: AuthorizationPolicy,
    ) -> None:
        if client.identity is None:
            raise ValueError("worker client needs a signer")
        self._client = client
        self._decryptor = decryptor
        self._policy = policy

    @property
    def identity(self) -> str:
        return self._client.identity  # type: ignore[return-value]

    def handle(self, event: DecryptionRequested) -> RequestResult:
        try:
            return self._handle(event)
        except Exception as ex:
            logger.exception("Unexpected failure handling request seq=%d id=%s", event.seq, event.id)
            return self._result(event, Outcome.ERROR, f"{type(ex).__name__}: {ex}")

    def _handle(self, event: DecryptionRequested) -> RequestResult:
        logger.info("Decryption requested for id=%s by %s (seq=%d)", event.id, event.requester, event.seq)

        record = self._client.store.get_record(event.id)
        if record is None:
            logger.warning("No ciphertext stored for id=%s; skipping", event.id)
            return self._result(event, Outcome.SKIPPED_MISSING)
        if record.decrypted:
            logger.info("Result for id=%s already on the ledger; skipping", event.id)
            return self._result(event, Outcome.ALREADY_DECRYPTED)

        decision = self._policy.evaluate(event.id, event.requester)
        if not decision.allowed:
            logger.warning("Requester %s denied for id=%s: %s", event.requester, event.id, decision.reason)
            return self._result(event, Outcome.DENIED, decision.reason)

        try:
            plaintext = self._decryptor.decrypt(record.ciphertext_bytes(), event.requester)
        except DecryptionError as ex:
            logger.warning("Decryption failed for id=%s: %s", event.id, ex)
            return self._result(event, Outcome.DECRYPT_FAILED, str(ex))

        try:
            receipt = self._submit(event.id, plaintext)
        except StateConflict:
            # another task for the same id committed first
            logger.info("Result for id=%s was submitted concurrently; skipping", event.id)
            return self._result(event, Outcome.ALREADY_DECRYPTED)
        except SubmissionFailure as ex:
            logger.error("Submit failed for id=%s: %s", event.id, ex)
            return self._result(event, Outcome.SUBMIT_FAILED, str(ex))

        logger.info("Submitted decryption result for id=%s tx=%s", event.id, receipt.tx_hash)
        return self._result(event, Outcome.SUBMITTED, receipt.tx_hash)

    def _submit(self, record_id: str, plaintext: str) -> Receipt:
        try:
            receipt = self._client.submit_decryption_result(record_id, plaintext)
        except StateConflict:
            raise
        except LedgerError as ex:
            raise SubmissionFailure(f"{type(ex).__name__}: {ex}") from ex
        if not receipt.events or receipt.events[-1].kind != "DecryptionSubmitted":
            raise SubmissionFailure(f"commit of {receipt.tx_hash} was not confirmed")
        return receipt

    @staticmethod
    def _result(event: DecryptionRequested, outcome: Outcome, detail: Optional[str] = None) -> RequestResult:
        return RequestResult(
            seq=event.seq, record_id=event.id, requester=event.requester, outcome=outcome, detail=detail
        )

    def process_batch(self, events: Sequence[DecryptionRequested], *, max_workers: int = 4) -> List[RequestResult]:
        """Handle `events` concurrently on a bounded pool; results keep input order."""
        if not events:
            return []
        if max_workers <= 1 or len(events) == 1:
            return [self.handle(e) for e in events]
        with ThreadPoolExecutor(max_workers=min(max_workers, len(events)), thread_name_prefix="decrypt") as pool:
            return list(pool.map(self.handle, events))
