from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, Optional, Tuple, Type
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError

from .codec import M, OptimisticLockError, dump_model, load_model, to_fernet


logger = logging.getLogger(__name__)


@dataclass
class S3ObjectRef:
    bucket: str
    key: str

    def __str__(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class S3StateStore(Generic[M]):
    """
    S3-backed persistence for one pydantic document, encrypted at rest using Fernet.

    Fernet tokens are authenticated, so an object modified by anyone without
    the key fails to load instead of being silently accepted.

    Usage
    - `read()` returns a `(document, etag)` pair, or `(None, None)` if the
      object does not exist yet.
    - `write(document, if_match=None)` writes the encrypted bytes and returns
      the new ETag. When `if_match` is provided, uses a copy-based conditional
      update so the write succeeds only if the current object ETag still
      matches (compare-and-swap); otherwise `OptimisticLockError` is raised.
    """

    def __init__(
        self,
        *,
        model: Type[M],
        s3: Optional[object] = None,
        bucket: str,
        key: str,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._model = model
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = to_fernet(fernet_key)

    @property
    def location(self) -> str:
        return str(self._obj)

    def read(self) -> Tuple[Optional[M], Optional[str]]:
        """Read and decrypt the document.

        Raises:
        - ValueError if decryption fails or content is invalid.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return (None, None)
            raise

        body = resp["Body"].read()
        etag = resp.get("ETag")  # usually quoted string
        return (load_model(self._model, body, self._fernet), etag)

    def write(self, document: M, *, if_match: Optional[str] = None) -> str:
        ciphertext = dump_model(document, self._fernet)

        if if_match is None:
            resp = self._s3.put_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
            return str(resp.get("ETag"))

        # PutObject has no If-Match; stage under a temp key and COPY over the
        # destination with an If-Match precondition on its current ETag.
        temp_key = f"{self._obj.key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._obj.bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )
        try:
            resp = self._s3.copy_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                CopySource={"Bucket": self._obj.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise OptimisticLockError(f"ETag mismatch for {self._obj}") from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._obj.bucket, Key=temp_key)
            except ClientError:
                logger.warning("Could not delete staging object %s/%s", self._obj.bucket, temp_key)

        return str(resp.get("ETag"))
