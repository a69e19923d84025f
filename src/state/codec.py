from __future__ import annotations

import json
from typing import Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ValidationError


M = TypeVar("M", bound=BaseModel)


class OptimisticLockError(Exception):
    """Raised when a version precondition fails during a conditional write."""


def to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    key_bytes = key.encode("utf-8") if isinstance(key, str) else key
    return Fernet(key_bytes)


def dump_model(model: BaseModel, fernet: Optional[Fernet] = None) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    payload = json.dumps(
        model.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")
    return fernet.encrypt(payload) if fernet is not None else payload


def load_model(model: Type[M], data: bytes, fernet: Optional[Fernet] = None) -> M:
    """Decrypt (when a key is configured) and validate a stored document.

    Raises ValueError if the token is invalid or the content does not match
    the model schema.
    """
    if fernet is not None:
        try:
            data = fernet.decrypt(data)
        except InvalidToken as ex:
            raise ValueError("Failed to decrypt state: invalid Fernet token") from ex
    try:
        return model.model_validate(json.loads(data.decode("utf-8")))
    except (ValidationError, UnicodeDecodeError, json.JSONDecodeError) as ex:
        raise ValueError(f"Failed to parse stored {model.__name__} JSON") from ex
