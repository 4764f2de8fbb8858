"""Path-addressed blob storage for raw and processed telemetry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Dict, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

LOGGER = logging.getLogger("trap_pipeline.services.blob_store")


class BlobStoreError(RuntimeError):
    """Raised when a blob cannot be written."""


class BlobStore(Protocol):
    """Write-only store with overwrite semantics."""

    def put(self, path: str, body: bytes, *, content_type: str = "application/json") -> None:
        ...


@dataclass
class InMemoryBlobStore(BlobStore):
    """Thread-safe in-memory store used locally and in tests."""

    name: str = "memory"

    def __post_init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = RLock()

    def put(self, path: str, body: bytes, *, content_type: str = "application/json") -> None:
        with self._lock:
            self._blobs[path] = bytes(body)

    def get(self, path: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(path)

    def paths(self) -> list[str]:
        with self._lock:
            return sorted(self._blobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


class S3BlobStore(BlobStore):
    """Writes blobs as objects in a single S3 bucket."""

    def __init__(self, *, client: Any, bucket: str, prefix: str = "") -> None:
        self._client = client
        self._bucket = bucket
        self._prefix = prefix.strip("/")

    @property
    def bucket(self) -> str:
        return self._bucket

    def put(self, path: str, body: bytes, *, content_type: str = "application/json") -> None:
        key = f"{self._prefix}/{path}" if self._prefix else path
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            LOGGER.error(
                "blob_store_put_failed",
                extra={"bucket": self._bucket, "key": key, "error": str(exc)},
            )
            raise BlobStoreError(f"Failed to write s3://{self._bucket}/{key}") from exc


def build_blob_store(*, client: Any, bucket: Optional[str], name: str) -> BlobStore:
    """Return an S3 store for ``bucket`` or an in-memory one when it is unset."""

    if bucket:
        return S3BlobStore(client=client, bucket=bucket)

    LOGGER.warning("blob_store_bucket_not_configured", extra={"store": name, "fallback": "memory"})
    return InMemoryBlobStore(name=name)
