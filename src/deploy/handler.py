from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from common.config import load_ssm_params, require, resolve_state_location
from common.identity import Signer, normalize_identity
from ledger.models import LedgerState
from ledger.record_store import RecordStore
from state.s3_store import S3StateStore


logger = logging.getLogger(__name__)

DEPLOY_PARAMS = [
    "owner_private_key",
    "fernet_key",
    "decryptor_identity",  # optional; wins over decryptor_private_key
    "decryptor_private_key",  # optional; identity derived from it
]


def resolve_initial_decryptor(owner: Signer, params: Dict[str, Optional[str]], override: Optional[str] = None) -> str:
    """Pick the initial decryptor: explicit override, configured identity, the
    identity of the configured decryptor key, or the deployer itself."""
    if override:
        return normalize_identity(override)
    if params.get("decryptor_identity"):
        return normalize_identity(params["decryptor_identity"])  # type: ignore[arg-type]
    if params.get("decryptor_private_key"):
        return Signer.from_hex(params["decryptor_private_key"]).identity  # type: ignore[arg-type]
    logger.warning("No decryptor configured; the deployer %s becomes the decryptor", owner.identity)
    return owner.identity


def run_deploy(*, decryptor: Optional[str] = None) -> Dict[str, Any]:
    """
    Initialize the ledger document in S3 with the deployer as owner.

    - Resolves bucket/key and SSM prefix from env (see `common.config`).
    - Loads the owner signing key and the state Fernet key from SSM.
    - Fails with `AlreadyDeployed` if the ledger object already exists.

    Returns: {"ok": True, "owner": ..., "decryptor": ..., "location": ...}.
    """
    loc = resolve_state_location()
    prefix = loc["prefix"]
    params = load_ssm_params(prefix, DEPLOY_PARAMS)
    owner = Signer.from_hex(require(params.get("owner_private_key"), f"{prefix}owner_private_key"))
    fernet_key = require(params.get("fernet_key"), f"{prefix}fernet_key")

    backend = S3StateStore(model=LedgerState, bucket=loc["bucket"], key=loc["key"], fernet_key=fernet_key)
    initial = resolve_initial_decryptor(owner, params, decryptor)
    store = RecordStore.deploy(backend, owner=owner.identity, decryptor=initial)
    return {
        "ok": True,
        "owner": store.owner,
        "decryptor": store.decryptor,
        "location": backend.location,
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for one-off deployment; `event["decryptor"]` overrides the initial decryptor."""
    return run_deploy(decryptor=(event or {}).get("decryptor"))
