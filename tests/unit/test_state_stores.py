from __future__ import annotations

import hashlib
import multiprocessing
import sys

import pytest
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet

from common.identity import Signer
from ledger.client import LedgerClient
from ledger.models import LedgerState, Record
from ledger.record_store import RecordStore
from state.file_store import FileStateStore
from state.models import WorkerCheckpoint
from state.s3_store import OptimisticLockError, S3StateStore


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}

    @staticmethod
    def _etag(body: bytes) -> str:
        return '"' + hashlib.md5(body).hexdigest() + '"'

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        etag = self._etag(Body)
        self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
        return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if not item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def copy_object(self, *, Bucket: str, Key: str, CopySource, IfMatch=None, MetadataDirective=None):
        dest_item = self._store.get((Bucket, Key))
        if IfMatch is not None and (not dest_item or dest_item.get("ETag") != IfMatch):
            raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "CopyObject")
        src_item = self._store.get((CopySource["Bucket"], CopySource["Key"]))
        if not src_item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "CopyObject")
        self._store[(Bucket, Key)] = dict(src_item)
        return {"ETag": src_item["ETag"]}

    def delete_object(self, *, Bucket: str, Key: str):
        self._store.pop((Bucket, Key), None)
        return {}

    def keys(self):
        return sorted(k for _, k in self._store)


def _ledger() -> LedgerState:
    return LedgerState(owner=Signer.generate().identity, decryptor=Signer.generate().identity)


@pytest.fixture
def fernet_key() -> bytes:
    return Fernet.generate_key()


def test_s3_read_missing_returns_none(fernet_key):
    store = S3StateStore(model=LedgerState, s3=_FakeS3(), bucket="b", key="k", fernet_key=fernet_key)
    assert store.read() == (None, None)


def test_s3_write_and_read_roundtrip_is_encrypted(fernet_key):
    s3 = _FakeS3()
    store = S3StateStore(model=LedgerState, s3=s3, bucket="b", key="k", fernet_key=fernet_key)
    src = _ledger()
    src.records["1"] = Record(ciphertext="0x0102", submitter=src.owner)

    etag = store.write(src)
    raw = s3.get_object(Bucket="b", Key="k")["Body"].read()
    assert b"0x0102" not in raw

    dst, read_etag = store.read()
    assert read_etag == etag
    assert dst == src


def test_s3_read_with_wrong_key_raises_value_error(fernet_key):
    s3 = _FakeS3()
    S3StateStore(model=LedgerState, s3=s3, bucket="b", key="k", fernet_key=fernet_key).write(_ledger())

    other = S3StateStore(model=LedgerState, s3=s3, bucket="b", key="k", fernet_key=Fernet.generate_key())
    with pytest.raises(ValueError):
        other.read()


def test_s3_conditional_write_detects_conflict(fernet_key):
    s3 = _FakeS3()
    store1 = S3StateStore(model=WorkerCheckpoint, s3=s3, bucket="b", key="k", fernet_key=fernet_key)
    store2 = S3StateStore(model=WorkerCheckpoint, s3=s3, bucket="b", key="k", fernet_key=fernet_key)

    etag1 = store1.write(WorkerCheckpoint(last_seq=1))
    etag2 = store1.write(WorkerCheckpoint(last_seq=2), if_match=etag1)
    assert etag2 != etag1

    with pytest.raises(OptimisticLockError):
        store2.write(WorkerCheckpoint(last_seq=3), if_match=etag1)

    current, _ = store1.read()
    assert current.last_seq == 2
    # staging objects are cleaned up
    assert s3.keys() == ["k"]


def test_file_store_roundtrip_and_conflict(tmp_path):
    store = FileStateStore(tmp_path / "nested" / "ledger.json", model=LedgerState)
    assert store.read() == (None, None)

    v1 = store.write(_ledger())
    doc, tag = store.read()
    assert tag == v1

    doc.decryptor_version = 2
    v2 = store.write(doc, if_match=v1)
    assert v2 != v1

    with pytest.raises(OptimisticLockError):
        store.write(doc, if_match=v1)


def test_file_store_conditional_write_on_missing_file_fails(tmp_path):
    store = FileStateStore(tmp_path / "ledger.json", model=LedgerState)
    with pytest.raises(OptimisticLockError):
        store.write(_ledger(), if_match="deadbeef")


def test_file_store_with_fernet_key(tmp_path, fernet_key):
    path = tmp_path / "ledger.json"
    store = FileStateStore(path, model=LedgerState, fernet_key=fernet_key)
    src = _ledger()
    store.write(src)

    assert src.owner.encode() not in path.read_bytes()
    assert store.read()[0] == src

    plain = FileStateStore(path, model=LedgerState)
    with pytest.raises(ValueError):
        plain.read()


def _store_many(path: str, owner_hex: str, worker_no: int, count: int) -> None:
    store = RecordStore(FileStateStore(path, model=LedgerState), max_retries=10_000)
    client = LedgerClient(store, Signer.from_hex(owner_hex))
    for i in range(count):
        client.store_ciphertext(f"{worker_no}-{i}", b"\x01")


@pytest.mark.skipif(
    sys.platform == "win32" or "fork" not in multiprocessing.get_all_start_methods(),
    reason="needs fork and POSIX file locks",
)
def test_file_store_commits_are_not_lost_across_processes(tmp_path, owner, decryptor_key):
    path = tmp_path / "ledger.json"
    RecordStore.deploy(FileStateStore(path, model=LedgerState), owner=owner.identity, decryptor=decryptor_key.identity)

    ctx = multiprocessing.get_context("fork")
    procs = [
        ctx.Process(target=_store_many, args=(str(path), owner.private_key_hex(), n, 30)) for n in range(4)
    ]
    for p in procs:
        p.start()
    for p in procs:
        p.join(timeout=120)

    assert [p.exitcode for p in procs] == [0, 0, 0, 0]
    state = RecordStore(FileStateStore(path, model=LedgerState)).snapshot()
    assert len(state.records) == 120
    assert [e.seq for e in state.events] == list(range(1, 121))
