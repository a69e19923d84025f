from __future__ import annotations

import os
from typing import Dict, Iterable, Optional


# Environment variable names shared by the deploy and worker runners
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_KEY = "STATE_KEY"  # optional; defaults to "ledger.json"
ENV_CHECKPOINT_KEY = "CHECKPOINT_KEY"  # optional; defaults to "worker-checkpoint.json"
ENV_PARAM_PREFIX = "PARAM_PREFIX"

# Project-prefixed fallbacks
FALLBACK_ENV_STATE_BUCKET = "CIPHER_STATE_BUCKET"
FALLBACK_ENV_PARAM_PREFIX = "CIPHER_PARAM_PREFIX"

DEFAULT_STATE_KEY = "ledger.json"
DEFAULT_CHECKPOINT_KEY = "worker-checkpoint.json"


def getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def resolve_state_location() -> Dict[str, str]:
    """Resolve bucket/keys/prefix from the environment, with fallbacks."""
    bucket = getenv(ENV_STATE_BUCKET) or getenv(FALLBACK_ENV_STATE_BUCKET)
    prefix = getenv(ENV_PARAM_PREFIX) or getenv(FALLBACK_ENV_PARAM_PREFIX)
    return {
        "bucket": require(bucket, ENV_STATE_BUCKET),
        "key": getenv(ENV_STATE_KEY, DEFAULT_STATE_KEY) or DEFAULT_STATE_KEY,
        "checkpoint_key": getenv(ENV_CHECKPOINT_KEY, DEFAULT_CHECKPOINT_KEY) or DEFAULT_CHECKPOINT_KEY,
        "prefix": require(prefix, ENV_PARAM_PREFIX),
    }


def load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    """Fetch SecureString parameters `{prefix}{name}`; missing ones map to None."""
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in out:
        try:
            resp = ssm.get_parameter(Name=f"{prefix}{name}", WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out
