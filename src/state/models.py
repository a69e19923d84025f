from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class WorkerCheckpoint(BaseModel):
    """
    Persistent delivery cursor of the decryptor worker.

    Fields
    - last_seq: sequence number of the last ledger event the worker finished
      handling (0 if it never ran). The next pass starts at `last_seq + 1`.
    - decryptor: identity the worker was running as when it wrote the
      checkpoint, kept for operators inspecting a rotation.
    """

    last_seq: int = Field(default=0, ge=0, description="Last handled event seq")
    decryptor: Optional[str] = Field(default=None, description="Worker identity at last write")

    @classmethod
    def empty(cls) -> "WorkerCheckpoint":
        return cls()
