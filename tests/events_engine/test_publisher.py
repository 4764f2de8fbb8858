from __future__ import annotations

import logging

import pytest
from botocore.exceptions import ClientError

from trap_pipeline.events_engine.publisher import (
    NullDeadLetterPublisher,
    SqsDeadLetterPublisher,
    build_dead_letter_publisher,
)


class FailingSQS:
    def send_message(self, **kwargs):
        raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "SendMessage")


def test_builder_picks_sqs_publisher_when_queue_configured(stub_sqs_cls) -> None:
    assert isinstance(build_dead_letter_publisher(client=stub_sqs_cls(), queue_url="dlq"), SqsDeadLetterPublisher)
    assert isinstance(build_dead_letter_publisher(client=stub_sqs_cls(), queue_url=None), NullDeadLetterPublisher)


def test_sqs_publisher_forwards_body_and_attributes(stub_sqs_cls) -> None:
    sqs = stub_sqs_cls()

    SqsDeadLetterPublisher(client=sqs, queue_url="dlq").publish(
        "raw-body",
        attributes={"DeviceId": "D1", "LocationId": ""},
        reason="Envelope failed validation",
    )

    attributes = sqs.sent[0]["MessageAttributes"]
    assert sqs.sent[0]["MessageBody"] == "raw-body"
    assert attributes["DeviceId"] == {"DataType": "String", "StringValue": "D1"}
    assert "LocationId" not in attributes
    assert attributes["DeadLetterReason"]["StringValue"] == "Envelope failed validation"


def test_sqs_publisher_propagates_failures() -> None:
    with pytest.raises(ClientError):
        SqsDeadLetterPublisher(client=FailingSQS(), queue_url="dlq").publish("body", attributes={}, reason="bad")


def test_null_publisher_logs_dropped_message(caplog) -> None:
    with caplog.at_level(logging.ERROR, logger="trap_pipeline.events_engine.publisher"):
        NullDeadLetterPublisher().publish("body", attributes={}, reason="bad")

    assert any(entry.message == "dead_letter_dropped" for entry in caplog.records)
