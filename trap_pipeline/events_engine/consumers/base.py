"""Reusable SQS consumer utilities for the events engine."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, Type

from botocore.exceptions import BotoCoreError, ClientError

from trap_pipeline.core.timing import sleep_unless_set
from trap_pipeline.events_engine.publisher import DeadLetterPublisher, NullDeadLetterPublisher

LOGGER = logging.getLogger("trap_pipeline.events_engine.consumer")

# SQS caps a single ReceiveMessage call at ten messages.
SQS_MAX_BATCH = 10


@dataclass(frozen=True)
class QueueMessage:
    """A received SQS message reduced to what the handlers need."""

    message_id: str
    receipt_handle: str
    body: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    receive_count: int = 1
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


MessageHandler = Callable[[QueueMessage], Awaitable[Any]]


@dataclass
class ConsumerStats:
    received: int = 0
    acknowledged: int = 0
    redelivered: int = 0
    dead_lettered: int = 0
    decode_failures: int = 0
    released: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def unwrap_sns_envelope(message_body: str) -> Dict[str, Any]:
    """Extract the inner payload when delivered via SNS -> SQS."""

    payload = json.loads(message_body)
    if isinstance(payload, dict) and "Message" in payload:
        inner = payload["Message"]
        if isinstance(inner, str):
            return json.loads(inner)
        if isinstance(inner, dict):
            return inner
    return payload


def to_queue_message(raw: Mapping[str, Any], *, received_at: Optional[datetime] = None) -> QueueMessage:
    """Convert a ``receive_message`` entry into a :class:`QueueMessage`."""

    attributes = {
        name: value.get("StringValue", "")
        for name, value in (raw.get("MessageAttributes") or {}).items()
        if isinstance(value, Mapping)
    }
    system_attributes = raw.get("Attributes") or {}
    try:
        receive_count = int(system_attributes.get("ApproximateReceiveCount", 1))
    except (TypeError, ValueError):
        receive_count = 1

    return QueueMessage(
        message_id=raw.get("MessageId", ""),
        receipt_handle=raw["ReceiptHandle"],
        body=raw.get("Body", ""),
        attributes=attributes,
        receive_count=receive_count,
        received_at=received_at or datetime.now(timezone.utc),
    )


class SQSEventConsumer:
    """Long-polling consumer that feeds messages to an async handler.

    At most ``max_in_flight`` messages are processed concurrently and a new
    receive is only issued when a slot is free, so the default of one gives
    strictly sequential processing. A message is deleted only after the
    handler returns; any exception resets its visibility so SQS redelivers it.
    """

    def __init__(
        self,
        *,
        queue_url: str,
        handler: MessageHandler,
        sqs_client: Any,
        max_in_flight: int = 1,
        wait_time_seconds: int = 20,
        visibility_timeout: Optional[int] = None,
        redelivery_delay_seconds: int = 0,
        max_receive_count: Optional[int] = None,
        dead_letter_publisher: Optional[DeadLetterPublisher] = None,
        poison_exceptions: Tuple[Type[BaseException], ...] = (),
        error_backoff_seconds: float = 5.0,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self._queue_url = queue_url
        self._handler = handler
        self._sqs = sqs_client
        self._max_in_flight = max_in_flight
        self._redelivery_delay = redelivery_delay_seconds
        self._max_receive_count = max_receive_count
        self._dead_letter = dead_letter_publisher or NullDeadLetterPublisher()
        self._poison_exceptions = poison_exceptions
        self._error_backoff = error_backoff_seconds
        self._receive_kwargs: Dict[str, Any] = {
            "QueueUrl": queue_url,
            "WaitTimeSeconds": wait_time_seconds,
            "MessageAttributeNames": ["All"],
            "AttributeNames": ["ApproximateReceiveCount", "SentTimestamp"],
        }
        if visibility_timeout is not None:
            self._receive_kwargs["VisibilityTimeout"] = visibility_timeout
        self.stats = ConsumerStats()

    @property
    def queue_url(self) -> str:
        return self._queue_url

    async def run(self, shutdown: asyncio.Event) -> None:
        """Consume until ``shutdown`` is set, then drain in-flight messages."""

        LOGGER.info(
            "sqs_consumer_started",
            extra={"queue_url": self._queue_url, "max_in_flight": self._max_in_flight},
        )
        in_flight: Set[asyncio.Task] = set()
        try:
            await self._consume(shutdown, in_flight)
            if in_flight:
                LOGGER.info("sqs_consumer_draining", extra={"in_flight": len(in_flight)})
                await asyncio.gather(*in_flight, return_exceptions=True)
        finally:
            for task in list(in_flight):
                task.cancel()
        LOGGER.info("sqs_consumer_stopped", extra={"queue_url": self._queue_url, **self.stats.as_dict()})

    async def _consume(self, shutdown: asyncio.Event, in_flight: Set[asyncio.Task]) -> None:
        while not shutdown.is_set():
            if len(in_flight) >= self._max_in_flight:
                await self._wait_for_slot(in_flight, shutdown)
                continue

            capacity = min(self._max_in_flight - len(in_flight), SQS_MAX_BATCH)
            try:
                messages = await asyncio.to_thread(self._receive_messages, capacity)
            except (BotoCoreError, ClientError) as exc:
                LOGGER.exception("sqs_receive_failed", extra={"error": str(exc)})
                await sleep_unless_set(shutdown, self._error_backoff)
                continue

            if shutdown.is_set():
                await self._release(messages)
                break

            received_at = datetime.now(timezone.utc)
            for raw in messages:
                task = asyncio.create_task(self.handle_message(to_queue_message(raw, received_at=received_at)))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)

    async def handle_message(self, message: QueueMessage) -> None:
        """Run the handler for one message and settle it with SQS."""

        self.stats.received += 1
        log_context = {
            "message_id": message.message_id,
            "receive_count": message.receive_count,
            "attributes": dict(message.attributes),
        }
        try:
            await self._handler(message)
        except asyncio.CancelledError:
            raise
        except self._poison_exceptions as exc:
            self.stats.decode_failures += 1
            await self._handle_poison(message, exc, log_context)
            return
        except Exception as exc:  # noqa: BLE001 - any failure means redelivery
            LOGGER.exception("sqs_message_processing_failed", extra={"error": str(exc), **log_context})
            await self._nack(message)
            return

        await self._ack(message)

    async def _handle_poison(self, message: QueueMessage, exc: BaseException, log_context: Dict[str, Any]) -> None:
        if self._max_receive_count is not None and message.receive_count >= self._max_receive_count:
            try:
                await asyncio.to_thread(
                    self._dead_letter.publish,
                    message.body,
                    attributes=message.attributes,
                    reason=str(exc),
                )
            except Exception:  # noqa: BLE001 - keep the message on the source queue
                LOGGER.exception("sqs_dead_letter_failed", extra=log_context)
                await self._nack(message)
                return
            self.stats.dead_lettered += 1
            await self._ack(message)
            return

        LOGGER.error(
            "sqs_poison_message_candidate",
            extra={"error": str(exc), "max_receive_count": self._max_receive_count, **log_context},
        )
        await self._nack(message)

    async def _ack(self, message: QueueMessage) -> None:
        try:
            await asyncio.to_thread(
                self._sqs.delete_message,
                QueueUrl=self._queue_url,
                ReceiptHandle=message.receipt_handle,
            )
        except (BotoCoreError, ClientError) as exc:
            LOGGER.exception(
                "sqs_delete_failed",
                extra={"error": str(exc), "message_id": message.message_id},
            )
            return
        self.stats.acknowledged += 1

    async def _nack(self, message: QueueMessage) -> None:
        self.stats.redelivered += 1
        await self._reset_visibility(message.receipt_handle, message.message_id)

    async def _release(self, messages: List[Dict[str, Any]]) -> None:
        for raw in messages:
            self.stats.released += 1
            await self._reset_visibility(raw["ReceiptHandle"], raw.get("MessageId", ""))

    async def _reset_visibility(self, receipt_handle: str, message_id: str) -> None:
        try:
            await asyncio.to_thread(
                self._sqs.change_message_visibility,
                QueueUrl=self._queue_url,
                ReceiptHandle=receipt_handle,
                VisibilityTimeout=self._redelivery_delay,
            )
        except (BotoCoreError, ClientError) as exc:
            # The message still reappears once its visibility timeout lapses.
            LOGGER.warning(
                "sqs_visibility_reset_failed",
                extra={"error": str(exc), "message_id": message_id},
            )

    async def _wait_for_slot(self, in_flight: Set[asyncio.Task], shutdown: asyncio.Event) -> None:
        stop = asyncio.ensure_future(shutdown.wait())
        try:
            await asyncio.wait({*in_flight, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()

    def _receive_messages(self, max_messages: int) -> List[Dict[str, Any]]:
        response = self._sqs.receive_message(MaxNumberOfMessages=max_messages, **self._receive_kwargs)
        return response.get("Messages", [])
