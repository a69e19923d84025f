from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Optional

from common.config import load_ssm_params, require, resolve_state_location
from common.decryption import Decryptor, FernetDecryptor, HttpDecryptionClient, MockReverseDecryptor
from common.identity import Signer
from common.policy import AllowlistPolicy
from ledger.client import LedgerClient
from ledger.models import DecryptionRequested, LedgerState
from ledger.record_store import RecordStore
from state.codec import OptimisticLockError
from state.models import WorkerCheckpoint
from state.s3_store import S3StateStore

from .processor import DecryptorWorker


logger = logging.getLogger(__name__)

WORKER_PARAMS = [
    "decryptor_private_key",
    "fernet_key",
    "allowed_requesters",  # optional allowlist
    "decrypt_endpoint",  # optional remote decryption service
    "decrypt_api_token",  # optional
    "decrypt_fernet_key",  # optional local Fernet decryption
]


@dataclass
class WorkerComponents:
    store: RecordStore
    worker: DecryptorWorker
    checkpoints: Any  # read()/write(if_match=) backend holding WorkerCheckpoint


def build_decryptor(params: Dict[str, Optional[str]]) -> Decryptor:
    """Pick the decryption capability from configuration.

    Precedence: remote endpoint, then a local Fernet key, then the mock.
    """
    endpoint = params.get("decrypt_endpoint")
    if endpoint:
        return HttpDecryptionClient(endpoint, api_token=params.get("decrypt_api_token"))
    fernet_key = params.get("decrypt_fernet_key")
    if fernet_key:
        return FernetDecryptor(fernet_key)
    logger.warning("No decryption backend configured; using the mock reverse-bytes decryptor")
    return MockReverseDecryptor()


def build_policy(raw_allowlist: Optional[str]) -> AllowlistPolicy:
    policy = AllowlistPolicy.from_raw(raw_allowlist)
    if policy.is_open:
        logger.warning("No requester allowlist configured; every requester will be served")
    return policy


def build_components(overrides: Optional[Dict[str, Optional[str]]] = None) -> WorkerComponents:
    """Resolve env + SSM configuration and wire the worker against S3 state.

    Non-empty `overrides` (keyed like `WORKER_PARAMS`) replace the SSM values.
    """
    loc = resolve_state_location()
    prefix = loc["prefix"]
    params = load_ssm_params(prefix, WORKER_PARAMS)
    params.update({k: v for k, v in (overrides or {}).items() if v})
    signer = Signer.from_hex(require(params.get("decryptor_private_key"), f"{prefix}decryptor_private_key"))
    fernet_key = require(params.get("fernet_key"), f"{prefix}fernet_key")

    ledger_backend = S3StateStore(model=LedgerState, bucket=loc["bucket"], key=loc["key"], fernet_key=fernet_key)
    checkpoints = S3StateStore(
        model=WorkerCheckpoint, bucket=loc["bucket"], key=loc["checkpoint_key"], fernet_key=fernet_key
    )
    store = RecordStore(ledger_backend)
    worker = DecryptorWorker(
        LedgerClient(store, signer),
        build_decryptor(params),
        build_policy(params.get("allowed_requesters")),
    )
    return WorkerComponents(store=store, worker=worker, checkpoints=checkpoints)


def process_pending(components: WorkerComponents, *, limit: int = 100, max_workers: int = 4) -> Dict[str, Any]:
    """
    Handle ledger events after the stored cursor, then advance the cursor.

    - Reads the checkpoint and up to `limit` events with `seq > last_seq`.
    - Dispatches every `DecryptionRequested` to the worker pool and waits for
      all of them; other event kinds only move the cursor.
    - Writes the new cursor only after the whole batch finished, so a crash
      mid-batch redelivers those requests on the next pass.

    Returns: {"ok": True, "received": N, "requests": M, "outcomes": {...}, "last_seq": int}.
    """
    checkpoint, etag = components.checkpoints.read()
    checkpoint = checkpoint or WorkerCheckpoint.empty()

    decryptor = components.store.decryptor
    if decryptor != components.worker.identity:
        logger.warning(
            "Worker identity %s is not the current decryptor %s; submissions will be rejected",
            components.worker.identity,
            decryptor,
        )

    events = components.store.events(after_seq=checkpoint.last_seq, limit=limit)
    requests = [e for e in events if isinstance(e, DecryptionRequested)]
    results = components.worker.process_batch(requests, max_workers=max_workers)
    outcomes = Counter(r.outcome.value for r in results)

    if events:
        checkpoint.last_seq = events[-1].seq
        checkpoint.decryptor = components.worker.identity
        try:
            components.checkpoints.write(checkpoint, if_match=etag)
        except OptimisticLockError:
            # Another worker moved the cursor; keep ours so no request is skipped
            logger.warning("Checkpoint changed concurrently; overwriting with last_seq=%d", checkpoint.last_seq)
            components.checkpoints.write(checkpoint)
        logger.info(
            "Processed %d events (%d requests) up to seq=%d: %s",
            len(events),
            len(requests),
            checkpoint.last_seq,
            dict(outcomes),
        )

    return {
        "ok": True,
        "received": len(events),
        "requests": len(requests),
        "outcomes": dict(outcomes),
        "last_seq": checkpoint.last_seq,
    }


def run_forever(
    components: WorkerComponents,
    *,
    poll_interval: float = 2.0,
    stop_event: Optional[threading.Event] = None,
    limit: int = 100,
    max_workers: int = 4,
) -> int:
    """Poll until `stop_event` is set; returns the number of completed passes.

    A failing pass (e.g. the state backend is unreachable) is logged and the
    loop keeps going after `poll_interval`.
    """
    stop = stop_event or threading.Event()
    logger.info("Decryptor worker running as %s", components.worker.identity)
    passes = 0
    while not stop.is_set():
        try:
            process_pending(components, limit=limit, max_workers=max_workers)
            passes += 1
        except Exception:
            logger.exception("Polling pass failed; retrying in %.1fs", poll_interval)
        stop.wait(poll_interval)
    logger.info("Decryptor worker stopped after %d passes", passes)
    return passes


def run_once(*, limit: int = 100, max_workers: int = 4) -> Dict[str, Any]:
    return process_pending(build_components(), limit=limit, max_workers=max_workers)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for scheduled polling of decryption requests.

    Environment:
    - STATE_BUCKET, STATE_KEY (default: ledger.json), CHECKPOINT_KEY, PARAM_PREFIX
    - SSM under PARAM_PREFIX must provide: decryptor_private_key, fernet_key
    """
    limit = int((event or {}).get("limit", 100))
    return run_once(limit=limit)
