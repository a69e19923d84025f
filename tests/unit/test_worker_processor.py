from __future__ import annotations

import threading
from typing import List

import pytest

from common.decryption import DecryptionError, MockReverseDecryptor
from common.identity import Signer
from common.policy import AllowAllPolicy, AllowlistPolicy
from ledger.client import LedgerClient
from ledger.models import DecryptionRequested
from worker.processor import DecryptorWorker, Outcome


def _cipher(text: str) -> bytes:
    return bytes(reversed(text.encode("utf-8")))


class _FailingDecryptor:
    def decrypt(self, ciphertext: bytes, requester: str) -> str:
        raise DecryptionError("backend unavailable")


class _ExplodingDecryptor:
    def decrypt(self, ciphertext: bytes, requester: str) -> str:
        raise KeyError("unexpected")


class _RecordingDecryptor(MockReverseDecryptor):
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.threads: set = set()
        self._lock = threading.Lock()

    def decrypt(self, ciphertext: bytes, requester: str) -> str:
        with self._lock:
            self.calls.append((ciphertext, requester))
            self.threads.add(threading.get_ident())
        return super().decrypt(ciphertext, requester)


def _request(record_store, alice, record_id) -> DecryptionRequested:
    receipt = LedgerClient(record_store, alice).request_decryption(record_id)
    return receipt.events[0]


@pytest.fixture
def stored(record_store, owner):
    LedgerClient(record_store, owner).store_ciphertext(1, _cipher("salary:1000"))
    return record_store


def test_allowed_request_is_decrypted_and_submitted(stored, decryptor_key, alice):
    dec = _RecordingDecryptor()
    worker = DecryptorWorker(LedgerClient(stored, decryptor_key), dec, AllowAllPolicy())

    result = worker.handle(_request(stored, alice, 1))

    assert result.outcome is Outcome.SUBMITTED
    assert dec.calls == [(_cipher("salary:1000"), alice.identity)]
    assert stored.get_result(1) == "salary:1000"


def test_denied_request_is_dropped(stored, decryptor_key, alice):
    policy = AllowlistPolicy([Signer.generate().identity])
    dec = _RecordingDecryptor()
    worker = DecryptorWorker(LedgerClient(stored, decryptor_key), dec, policy)

    result = worker.handle(_request(stored, alice, 1))

    assert result.outcome is Outcome.DENIED
    assert dec.calls == []
    assert stored.get_result(1) is None


def test_decryption_failure_submits_nothing(stored, decryptor_key, alice):
    worker = DecryptorWorker(LedgerClient(stored, decryptor_key), _FailingDecryptor(), AllowAllPolicy())

    result = worker.handle(_request(stored, alice, 1))

    assert result.outcome is Outcome.DECRYPT_FAILED
    assert "backend unavailable" in result.detail
    assert stored.events(kinds=["DecryptionSubmitted"]) == []


def test_rotated_away_worker_reports_submit_failure(stored, owner, decryptor_key, alice):
    event = _request(stored, alice, 1)
    LedgerClient(stored, owner).set_decryptor(Signer.generate().identity)
    worker = DecryptorWorker(LedgerClient(stored, decryptor_key), MockReverseDecryptor(), AllowAllPolicy())

    result = worker.handle(event)

    assert result.outcome is Outcome.SUBMIT_FAILED
    assert "Unauthorized" in result.detail
    assert stored.get_result(1) is None


def test_missing_ciphertext_is_skipped(record_store, decryptor_key, alice):
    worker = DecryptorWorker(LedgerClient(record_store, decryptor_key), MockReverseDecryptor(), AllowAllPolicy())
    phantom = DecryptionRequested(seq=1, tx_hash="0x00", id="nope", requester=alice.identity)

    assert worker.handle(phantom).outcome is Outcome.SKIPPED_MISSING


def test_redelivered_request_is_not_resubmitted(stored, decryptor_key, alice):
    worker = DecryptorWorker(LedgerClient(stored, decryptor_key), MockReverseDecryptor(), AllowAllPolicy())
    event = _request(stored, alice, 1)

    assert worker.handle(event).outcome is Outcome.SUBMITTED
    assert worker.handle(event).outcome is Outcome.ALREADY_DECRYPTED
    assert len(stored.events(kinds=["DecryptionSubmitted"])) == 1


def test_unexpected_errors_are_contained(stored, decryptor_key, alice):
    worker = DecryptorWorker(LedgerClient(stored, decryptor_key), _ExplodingDecryptor(), AllowAllPolicy())

    result = worker.handle(_request(stored, alice, 1))

    assert result.outcome is Outcome.ERROR
    assert "KeyError" in result.detail


def test_batch_runs_concurrently_and_keeps_order(record_store, owner, decryptor_key, alice):
    events = []
    for i in range(6):
        LedgerClient(record_store, owner).store_ciphertext(i, _cipher(f"value-{i}"))
        events.append(_request(record_store, alice, i))
    dec = _RecordingDecryptor()
    worker = DecryptorWorker(LedgerClient(record_store, decryptor_key), dec, AllowAllPolicy())

    results = worker.process_batch(events, max_workers=3)

    assert [r.record_id for r in results] == [str(i) for i in range(6)]
    assert all(r.outcome is Outcome.SUBMITTED for r in results)
    assert {record_store.get_result(i) for i in range(6)} == {f"value-{i}" for i in range(6)}


class _RendezvousDecryptor(MockReverseDecryptor):
    """Holds every caller until `parties` of them are decrypting at once."""

    def __init__(self, parties: int) -> None:
        self._barrier = threading.Barrier(parties, timeout=10)

    def decrypt(self, ciphertext: bytes, requester: str) -> str:
        self._barrier.wait()
        return super().decrypt(ciphertext, requester)


def test_duplicate_requests_in_one_batch_submit_once(stored, decryptor_key, alice):
    first = _request(stored, alice, 1)
    second = _request(stored, alice, 1)
    worker = DecryptorWorker(LedgerClient(stored, decryptor_key), _RendezvousDecryptor(2), AllowAllPolicy())

    results = worker.process_batch([first, second], max_workers=2)

    assert sorted(r.outcome.value for r in results) == ["already_decrypted", "submitted"]
    assert len(stored.events(kinds=["DecryptionSubmitted"])) == 1
    assert stored.get_result(1) == "salary:1000"


def test_worker_requires_signer(record_store):
    with pytest.raises(ValueError):
        DecryptorWorker(LedgerClient(record_store), MockReverseDecryptor(), AllowAllPolicy())
