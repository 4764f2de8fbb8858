"""Telemetry ingestion wired through the events engine."""

from __future__ import annotations

import logging
from typing import Any, Optional

from trap_pipeline.core.config import AppSettings
from trap_pipeline.events_engine.consumers.base import SQSEventConsumer
from trap_pipeline.events_engine.processor import EventProcessor
from trap_pipeline.events_engine.publisher import DeadLetterPublisher
from trap_pipeline.events_engine.schemas import EnvelopeDecodeError

LOGGER = logging.getLogger("trap_pipeline.events_engine.consumers.telemetry")


class TelemetrySQSEventConsumer(SQSEventConsumer):
    """SQS consumer specialized for device telemetry envelopes."""

    def __init__(
        self,
        *,
        queue_url: str,
        processor: EventProcessor,
        sqs_client: Any,
        max_in_flight: int = 1,
        wait_time_seconds: int = 20,
        visibility_timeout: Optional[int] = None,
        redelivery_delay_seconds: int = 0,
        max_receive_count: Optional[int] = None,
        dead_letter_publisher: Optional[DeadLetterPublisher] = None,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        super().__init__(
            queue_url=queue_url,
            handler=processor.process,
            sqs_client=sqs_client,
            max_in_flight=max_in_flight,
            wait_time_seconds=wait_time_seconds,
            visibility_timeout=visibility_timeout,
            redelivery_delay_seconds=redelivery_delay_seconds,
            max_receive_count=max_receive_count,
            dead_letter_publisher=dead_letter_publisher,
            poison_exceptions=(EnvelopeDecodeError,),
            error_backoff_seconds=error_backoff_seconds,
        )
        self.processor = processor


def build_telemetry_consumer(
    settings: AppSettings,
    *,
    processor: EventProcessor,
    sqs_client: Any,
    dead_letter_publisher: Optional[DeadLetterPublisher] = None,
) -> TelemetrySQSEventConsumer:
    """Construct the telemetry consumer from application settings."""

    if not settings.sqs_queue_url:
        raise RuntimeError("TRAP_SQS_QUEUE_URL is not configured")

    if settings.max_in_flight_messages > 1:
        LOGGER.warning(
            "consumer_concurrency_enabled",
            extra={"max_in_flight": settings.max_in_flight_messages},
        )

    return TelemetrySQSEventConsumer(
        queue_url=settings.sqs_queue_url,
        processor=processor,
        sqs_client=sqs_client,
        max_in_flight=settings.max_in_flight_messages,
        wait_time_seconds=settings.sqs_wait_time_seconds,
        visibility_timeout=settings.sqs_visibility_timeout,
        redelivery_delay_seconds=settings.redelivery_delay_seconds,
        max_receive_count=settings.max_receive_count,
        dead_letter_publisher=dead_letter_publisher,
        error_backoff_seconds=settings.error_backoff_seconds,
    )
