from __future__ import annotations

import fcntl
import hashlib
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Generic, Iterator, Optional, Tuple, Type

from .codec import M, OptimisticLockError, dump_model, load_model, to_fernet


_LOCKS: Dict[Path, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    with _LOCKS_GUARD:
        return _LOCKS.setdefault(path, threading.Lock())


class FileStateStore(Generic[M]):
    """
    Local JSON-file persistence with the same read/write contract as `S3StateStore`.

    - The version tag is the SHA-256 of the stored bytes.
    - Reads and conditional writes hold a POSIX `flock` on a sidecar
      `<name>.lock` file (shared for reads, exclusive for writes), so the
      compare-and-replace is atomic across processes sharing the file. A
      per-path thread lock serializes threads of one process.
    - The file itself is replaced atomically (`os.replace`).
    - Optional Fernet key encrypts the file at rest.
    """

    def __init__(
        self,
        path: os.PathLike[str] | str,
        *,
        model: Type[M],
        fernet_key: Optional[str | bytes] = None,
    ) -> None:
        self._path = Path(path).resolve()
        self._lock_path = self._path.with_name(f"{self._path.name}.lock")
        self._model = model
        self._fernet = to_fernet(fernet_key) if fernet_key else None
        self._lock = _lock_for(self._path)

    @property
    def location(self) -> str:
        return str(self._path)

    @staticmethod
    def _tag(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @contextmanager
    def _locked(self, exclusive: bool) -> Iterator[None]:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._lock_path, "a+b") as fh:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                try:
                    yield
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _read_bytes(self) -> Optional[bytes]:
        try:
            return self._path.read_bytes()
        except FileNotFoundError:
            return None

    def read(self) -> Tuple[Optional[M], Optional[str]]:
        with self._locked(exclusive=False):
            data = self._read_bytes()
        if data is None:
            return (None, None)
        return (load_model(self._model, data, self._fernet), self._tag(data))

    def write(self, document: M, *, if_match: Optional[str] = None) -> str:
        payload = dump_model(document, self._fernet)
        with self._locked(exclusive=True):
            if if_match is not None:
                current = self._read_bytes()
                if current is None or self._tag(current) != if_match:
                    raise OptimisticLockError(f"Version mismatch for {self._path}")
            tmp = self._path.with_name(f"{self._path.name}.tmp-{os.getpid()}-{threading.get_ident()}")
            tmp.write_bytes(payload)
            os.replace(tmp, self._path)
        return self._tag(payload)
