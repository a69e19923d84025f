from __future__ import annotations

import time
from typing import Any, Dict, Optional, Protocol

import httpx
from cryptography.fernet import Fernet, InvalidToken

from .rate_limiter import RateLimitError, SlidingWindowRateLimiter


class DecryptionError(RuntimeError):
    """The decryption capability failed for a ciphertext/requester pair."""


class Decryptor(Protocol):
    """External decryption capability: ciphertext bytes -> plaintext string."""

    def decrypt(self, ciphertext: bytes, requester: str) -> str: ...


class MockReverseDecryptor:
    """
    Stand-in decryption used for demos and tests.

    Ciphertexts are the plaintext's UTF-8 bytes in reverse order, so
    `bytes(reversed(b"salary:1000")).hex()` decrypts to "salary:1000".
    """

    def decrypt(self, ciphertext: bytes, requester: str) -> str:
        try:
            return bytes(reversed(ciphertext)).decode("utf-8")
        except UnicodeDecodeError as ex:
            raise DecryptionError("Reversed ciphertext is not valid UTF-8") from ex


class FernetDecryptor:
    """Decrypts Fernet tokens with a key held by the decryptor service."""

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key.encode("utf-8") if isinstance(key, str) else key)

    def decrypt(self, ciphertext: bytes, requester: str) -> str:
        try:
            raw = self._fernet.decrypt(ciphertext)
        except InvalidToken as ex:
            raise DecryptionError("Invalid Fernet token") from ex
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as ex:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from ex


class HttpDecryptionClient:
    """
    Client for a remote decryption service.

    Protocol
    - POST {base_url}/decrypt with JSON `{"ciphertext": "0x..", "requester": "0x.."}`.
    - Success: HTTP 200 with `{"plaintext": "..."}`.
    - Anything else is a `DecryptionError`.

    Notes
    - Retries transport errors, 429 and 5xx with exponential backoff, honoring
      a numeric `Retry-After` header when the service sends one.
    - A local sliding-window limiter (default 10 req/sec) is shared by every
      worker task using this client.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        timeout: float = 30.0,
        max_per_second: int = 10,
        max_attempts: int = 4,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        # per-request header; also applies to an injected client
        self._headers = {"Authorization": f"Bearer {api_token}"} if api_token else None
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=self._base_url, timeout=timeout)
        self._limiter = SlidingWindowRateLimiter(max_calls=max_per_second, per_seconds=1.0)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpDecryptionClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def decrypt(self, ciphertext: bytes, requester: str) -> str:
        data = self._request({"ciphertext": "0x" + ciphertext.hex(), "requester": requester})
        plaintext = data.get("plaintext")
        if not isinstance(plaintext, str):
            raise DecryptionError("Malformed response from decryption service")
        return plaintext

    def _request(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            self._limiter.acquire(blocking=True, timeout=30.0)
        except RateLimitError as rl:
            raise DecryptionError("Local rate limiter prevented request") from rl

        backoff = 0.5
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            delay = backoff
            try:
                resp = self._client.post(f"{self._base_url}/decrypt", json=body, headers=self._headers)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    try:
                        payload = resp.json()
                    except ValueError as exc:
                        raise DecryptionError("Failed to parse JSON from decryption service") from exc
                    if not isinstance(payload, dict):
                        raise DecryptionError("Malformed response from decryption service")
                    return payload

                if resp.status_code not in (429, 500, 502, 503, 504):
                    raise DecryptionError(
                        f"HTTP {resp.status_code} from decryption service: {resp.text[:200]}"
                    )
                last_exc = DecryptionError(f"HTTP {resp.status_code} from decryption service")
                retry_after = resp.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    delay = float(retry_after)

            if attempt < self._max_attempts:
                time.sleep(min(delay, 10.0))
                backoff = min(backoff * 2, 8.0)

        raise DecryptionError("Decryption request failed after retries") from last_exc


__all__ = [
    "DecryptionError",
    "Decryptor",
    "FernetDecryptor",
    "HttpDecryptionClient",
    "MockReverseDecryptor",
]
