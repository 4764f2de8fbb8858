"""Dead-letter publishers for messages the pipeline gives up on."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

LOGGER = logging.getLogger("trap_pipeline.events_engine.publisher")


class DeadLetterPublisher(Protocol):
    """Transport abstraction for poison-message forwarding."""

    def publish(self, body: str, *, attributes: Mapping[str, str], reason: str) -> None:
        ...


class NullDeadLetterPublisher(DeadLetterPublisher):
    """Used when no dead-letter queue is configured; the message is only logged."""

    def publish(self, body: str, *, attributes: Mapping[str, str], reason: str) -> None:  # noqa: D401
        LOGGER.error(
            "dead_letter_dropped",
            extra={"reason": reason, "attributes": dict(attributes), "body_preview": body[:256]},
        )


class SqsDeadLetterPublisher(DeadLetterPublisher):
    """Forwards the verbatim body to a dead-letter SQS queue."""

    def __init__(self, *, client: Any, queue_url: str) -> None:
        self._client = client
        self._queue_url = queue_url

    def publish(self, body: str, *, attributes: Mapping[str, str], reason: str) -> None:
        message_attributes: Dict[str, Dict[str, str]] = {
            name: {"DataType": "String", "StringValue": value} for name, value in attributes.items() if value
        }
        message_attributes["DeadLetterReason"] = {"DataType": "String", "StringValue": reason[:256]}
        try:
            self._client.send_message(
                QueueUrl=self._queue_url,
                MessageBody=body,
                MessageAttributes=message_attributes,
            )
        except (BotoCoreError, ClientError) as exc:
            LOGGER.exception(
                "dead_letter_publish_failed",
                extra={"queue_url": self._queue_url, "reason": reason},
            )
            raise exc

        LOGGER.warning(
            "dead_letter_published",
            extra={"queue_url": self._queue_url, "reason": reason, "attributes": dict(attributes)},
        )


def build_dead_letter_publisher(*, client: Any, queue_url: Optional[str]) -> DeadLetterPublisher:
    if queue_url:
        return SqsDeadLetterPublisher(client=client, queue_url=queue_url)
    return NullDeadLetterPublisher()
