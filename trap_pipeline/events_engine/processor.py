"""Per-message pipeline: decode, archive, transform, reconcile."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from trap_pipeline.events_engine.consumers.base import QueueMessage, unwrap_sns_envelope
from trap_pipeline.events_engine.schemas import EnvelopeDecodeError, EventEnvelope, decode_envelope
from trap_pipeline.services.archiver import ArchiveError, RawArchiver
from trap_pipeline.services.blob_store import BlobStoreError
from trap_pipeline.services.reconciler import DeviceStateReconciler, ReconcileOutcome
from trap_pipeline.services.registry_client import RegistryClient, RegistryError
from trap_pipeline.services.transformer import ProcessedRecordWriter, transform_envelope

LOGGER = logging.getLogger("trap_pipeline.events_engine.processor")


@dataclass(frozen=True)
class ProcessingResult:
    envelope: EventEnvelope
    archive_path: str
    processed_path: Optional[str]
    outcome: Optional[ReconcileOutcome]


class EventProcessor:
    """Runs every step for a single queue message.

    Decode, raw-archive and reconcile failures propagate so the consumer can
    leave the message for redelivery. A failure to store the processed record
    is logged and does not block acknowledgement, and neither does a failed
    attempt to mark the event processed in the Registry. Bodies that fail to
    decode are still archived, filed under the ``DeviceId`` attribute when
    present.
    """

    def __init__(
        self,
        *,
        archiver: RawArchiver,
        record_writer: ProcessedRecordWriter,
        reconciler: DeviceStateReconciler,
        registry: Optional[RegistryClient] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._archiver = archiver
        self._record_writer = record_writer
        self._reconciler = reconciler
        self._registry = registry
        self._clock = clock

    def decode(self, message: QueueMessage) -> EventEnvelope:
        try:
            payload = unwrap_sns_envelope(message.body)
        except ValueError as exc:
            raise EnvelopeDecodeError(f"Message body is not valid JSON: {exc}") from exc
        return decode_envelope(payload, attributes=message.attributes, arrival_time=message.received_at)

    async def process(self, message: QueueMessage) -> ProcessingResult:
        try:
            envelope = self.decode(message)
        except EnvelopeDecodeError as exc:
            LOGGER.error(
                "envelope_decode_failed",
                extra={
                    "message_id": message.message_id,
                    "receive_count": message.receive_count,
                    "error": str(exc),
                },
            )
            await self._archive_undecodable(message)
            raise

        archive_path = await self._archiver.archive(
            message.body,
            device_id=envelope.device_id,
            arrival_time=message.received_at,
        )

        record = transform_envelope(envelope, now=self._clock())
        processed_path: Optional[str] = None
        try:
            processed_path = await self._record_writer.write(record)
        except BlobStoreError:
            LOGGER.exception(
                "processed_record_store_failed",
                extra={"event_id": envelope.event_id, "event_type": envelope.event_type_name},
            )

        outcome = await self._reconciler.reconcile(envelope)

        if self._registry is not None:
            await self._mark_processed(envelope)

        LOGGER.info(
            "telemetry_event_processed",
            extra={
                "event_id": envelope.event_id,
                "device_id": envelope.device_id,
                "event_type": envelope.event_type_name,
                "archive_path": archive_path,
            },
        )
        return ProcessingResult(
            envelope=envelope,
            archive_path=archive_path,
            processed_path=processed_path,
            outcome=outcome,
        )

    async def _archive_undecodable(self, message: QueueMessage) -> None:
        try:
            await self._archiver.archive(
                message.body,
                device_id=message.attributes.get("DeviceId"),
                arrival_time=message.received_at,
            )
        except ArchiveError:
            LOGGER.exception("undecodable_payload_archive_failed", extra={"message_id": message.message_id})

    async def _mark_processed(self, envelope: EventEnvelope) -> None:
        processed = envelope.model_copy(update={"is_processed": True, "processed_timestamp": self._clock()})
        try:
            await self._registry.mark_event_processed(processed)
        except RegistryError:
            LOGGER.exception(
                "event_mark_processed_failed",
                extra={"event_id": envelope.event_id, "device_id": envelope.device_id},
            )
