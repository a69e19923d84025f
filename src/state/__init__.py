"""
Persistence backends for versioned JSON documents.

Both backends expose `read() -> (document | None, version)` and
`write(document, if_match=None) -> version`, where a stale `if_match`
raises `OptimisticLockError`. The ledger and the worker checkpoint are
stored through this contract.
"""

from .codec import OptimisticLockError
from .file_store import FileStateStore
from .models import WorkerCheckpoint
from .s3_store import S3StateStore

__all__ = ["FileStateStore", "OptimisticLockError", "S3StateStore", "WorkerCheckpoint"]
