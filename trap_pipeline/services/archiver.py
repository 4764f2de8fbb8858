"""Raw envelope archival into time-partitioned cold storage."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Union
from uuid import uuid4

from trap_pipeline.services.blob_store import BlobStore, BlobStoreError

LOGGER = logging.getLogger("trap_pipeline.services.archiver")

UNKNOWN_DEVICE = "unknown"


class ArchiveError(RuntimeError):
    """Raised when the raw payload could not be written to cold storage."""


def archive_path(arrival_time: datetime, device_id: Optional[str], archive_id: str) -> str:
    """``{yyyy}/{mm}/{dd}/{hh}/{deviceId}/{archiveId}.json`` in UTC."""

    arrival_time = arrival_time.astimezone(timezone.utc)
    device_segment = (device_id or "").strip().replace("/", "_") or UNKNOWN_DEVICE
    return f"{arrival_time:%Y/%m/%d/%H}/{device_segment}/{archive_id}.json"


class RawArchiver:
    """Stores the verbatim message body under a fresh archive id.

    Every call writes a new object, so redelivered messages produce additional
    entries rather than overwriting earlier ones.
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._clock = clock

    async def archive(
        self,
        body: Union[str, bytes],
        *,
        device_id: Optional[str],
        arrival_time: Optional[datetime] = None,
    ) -> str:
        arrival_time = arrival_time or self._clock()
        path = archive_path(arrival_time, device_id, str(uuid4()))
        payload = body.encode("utf-8") if isinstance(body, str) else body

        try:
            await asyncio.to_thread(self._store.put, path, payload)
        except BlobStoreError as exc:
            raise ArchiveError(f"Failed to archive raw payload to {path}") from exc

        LOGGER.info(
            "raw_payload_archived",
            extra={"path": path, "device_id": device_id, "size_bytes": len(payload)},
        )
        return path
