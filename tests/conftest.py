import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*`, `ledger.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def owner():
    from common.identity import Signer

    return Signer.generate()


@pytest.fixture
def decryptor_key():
    from common.identity import Signer

    return Signer.generate()


@pytest.fixture
def alice():
    from common.identity import Signer

    return Signer.generate()


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "ledger.json"


@pytest.fixture
def record_store(ledger_path, owner, decryptor_key):
    from ledger.models import LedgerState
    from ledger.record_store import RecordStore
    from state.file_store import FileStateStore

    backend = FileStateStore(ledger_path, model=LedgerState)
    return RecordStore.deploy(backend, owner=owner.identity, decryptor=decryptor_key.identity)
