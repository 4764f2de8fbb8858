"""Device/Event Registry client."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from trap_pipeline.events_engine.schemas import EventEnvelope
from trap_pipeline.schemas.device import DeviceRecord

logger = logging.getLogger("trap_pipeline.services.registry_client")


class RegistryError(Exception):
    """Base exception for Registry operations."""


class RegistryConflictError(RegistryError):
    """The record was modified concurrently (409/412 on write)."""


class DeviceNotFoundError(RegistryError):
    """The device disappeared between read and write."""


class RegistryClient:
    """
    Async client for the Registry REST API.

    The underlying ``httpx.AsyncClient`` is owned by the caller (the pipeline
    supervisor opens it once and closes it on shutdown).

    Writes carry ``If-Match`` whenever the record was read with an ETag, which
    turns the reconciler's read-modify-write into a compare-and-swap.
    """

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    async def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        """
        Fetch a device record.

        Returns:
            The record, or ``None`` when the Registry answers 404.

        Raises:
            RegistryError: on any other failure.
        """
        response = await self._send("GET", _resource("devices", device_id), device_id=device_id)
        if response.status_code == httpx.codes.NOT_FOUND:
            logger.warning("registry_device_not_found", extra={"device_id": device_id})
            return None
        self._raise_for_status(response, operation="get_device", device_id=device_id)

        record = DeviceRecord.model_validate(response.json())
        etag = response.headers.get("ETag")
        if etag:
            record.version = etag
        return record

    async def put_device(self, device_id: str, record: DeviceRecord) -> Optional[str]:
        """
        Write back a full device record.

        Returns:
            The new ETag when the Registry supplies one.

        Raises:
            ValueError: if ``record.device_id`` does not match ``device_id``.
            RegistryConflictError: on 409 or 412.
            DeviceNotFoundError: on 404.
            RegistryError: on any other failure.
        """
        if record.device_id != device_id:
            raise ValueError(f"Device id mismatch: {device_id!r} vs {record.device_id!r}")

        headers = {"If-Match": record.version} if record.version else {}
        response = await self._send(
            "PUT",
            _resource("devices", device_id),
            device_id=device_id,
            json=record.to_wire(),
            headers=headers,
        )

        if response.status_code in (httpx.codes.CONFLICT, httpx.codes.PRECONDITION_FAILED):
            logger.warning(
                "registry_device_conflict",
                extra={"device_id": device_id, "status_code": response.status_code},
            )
            raise RegistryConflictError(f"Concurrent modification of device {device_id}")
        if response.status_code == httpx.codes.NOT_FOUND:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        self._raise_for_status(response, operation="put_device", device_id=device_id)

        logger.info(
            "registry_device_updated",
            extra={"device_id": device_id, "status": record.status.value},
        )
        return response.headers.get("ETag")

    async def list_devices(self) -> List[DeviceRecord]:
        response = await self._send("GET", "devices")
        self._raise_for_status(response, operation="list_devices")
        return [DeviceRecord.model_validate(item) for item in response.json()]

    async def list_events(self, *, since: datetime) -> List[Dict[str, Any]]:
        """Events recorded at or after ``since`` as raw JSON objects."""
        response = await self._send("GET", "events", params={"since": since.isoformat()})
        self._raise_for_status(response, operation="list_events")
        payload = response.json()
        if not isinstance(payload, list):
            raise RegistryError("Registry returned a non-list event collection")
        return payload

    async def mark_event_processed(self, envelope: EventEnvelope) -> bool:
        """
        Persist the processed flag for an event.

        Returns:
            ``False`` when the Registry does not know the event.
        """
        response = await self._send(
            "PUT",
            _resource("events", envelope.event_id),
            device_id=envelope.device_id,
            json=envelope.to_wire(),
        )
        if response.status_code == httpx.codes.NOT_FOUND:
            logger.warning(
                "registry_event_not_found",
                extra={"event_id": envelope.event_id, "device_id": envelope.device_id},
            )
            return False
        self._raise_for_status(response, operation="mark_event_processed", event_id=envelope.event_id)
        return True

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        context = {key: kwargs.pop(key) for key in ("device_id",) if key in kwargs}
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.error(
                "registry_request_error",
                extra={"method": method, "path": path, "error": str(exc), **context},
            )
            raise RegistryError(f"Failed to reach Registry: {exc}") from exc

    def _raise_for_status(self, response: httpx.Response, *, operation: str, **context: Any) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "registry_http_error",
                extra={
                    "operation": operation,
                    "status_code": exc.response.status_code,
                    "detail": exc.response.text[:512],
                    **context,
                },
            )
            raise RegistryError(f"Registry {operation} failed: {exc.response.status_code}") from exc


def _resource(collection: str, identifier: str) -> str:
    return f"{collection}/{quote(identifier, safe='')}"


def build_registry_http_client(base_url: str, timeout: float) -> httpx.AsyncClient:
    """HTTP client rooted at the Registry base address."""

    return httpx.AsyncClient(base_url=f"{base_url.rstrip('/')}/", timeout=timeout)
