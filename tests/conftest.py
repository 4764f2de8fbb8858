import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("TRAP_ENVIRONMENT", "test")
os.environ.setdefault("TRAP_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("TRAP_PIPELINE_ENABLED", "false")
os.environ.setdefault("TRAP_SQS_QUEUE_URL", "")
os.environ.setdefault("TRAP_RAW_BUCKET", "")
os.environ.setdefault("TRAP_PROCESSED_BUCKET", "")
os.environ.setdefault("TRAP_LOG_JSON", "false")

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from trap_pipeline.core.config import get_settings

get_settings.cache_clear()

from trap_pipeline.core.database import engine  # noqa: E402
from trap_pipeline.main import create_app  # noqa: E402
from trap_pipeline.models import Base  # noqa: E402
from trap_pipeline.schemas.device import DeviceRecord, DeviceStatus  # noqa: E402
from trap_pipeline.services.registry_client import RegistryConflictError  # noqa: E402


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client() -> TestClient:  # noqa: ANN001
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


class FakeRegistry:
    """In-memory stand-in for :class:`RegistryClient`."""

    def __init__(
        self,
        devices: Optional[List[DeviceRecord]] = None,
        *,
        events: Optional[List[Dict[str, Any]]] = None,
        conflicts: int = 0,
    ) -> None:
        self.devices = {device.device_id: device for device in devices or []}
        self.events = list(events or [])
        self.conflicts = conflicts
        self.puts: List[DeviceRecord] = []
        self.marked: List[Any] = []
        self.gets = 0

    async def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        self.gets += 1
        device = self.devices.get(device_id)
        return device.model_copy() if device is not None else None

    async def put_device(self, device_id: str, record: DeviceRecord) -> Optional[str]:
        if self.conflicts:
            self.conflicts -= 1
            raise RegistryConflictError(f"Concurrent modification of device {device_id}")
        self.puts.append(record)
        self.devices[device_id] = record
        return f'"v{len(self.puts)}"'

    async def list_devices(self) -> List[DeviceRecord]:
        return list(self.devices.values())

    async def list_events(self, *, since: datetime) -> List[Dict[str, Any]]:
        return list(self.events)

    async def mark_event_processed(self, envelope) -> bool:  # noqa: ANN001
        self.marked.append(envelope)
        return True


class StubSQSClient:
    """Records every call a consumer makes against SQS."""

    def __init__(self, batches: Optional[List[List[Dict[str, Any]]]] = None, *, on_receive=None) -> None:  # noqa: ANN001
        self.batches = list(batches or [])
        self.on_receive = on_receive
        self.receive_calls: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.visibility: List[tuple] = []
        self.sent: List[Dict[str, Any]] = []
        self.errors: List[Exception] = []
        self.closed = False

    def receive_message(self, **kwargs: Any) -> Dict[str, Any]:
        self.receive_calls.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        if self.on_receive is not None:
            self.on_receive()
        if self.batches:
            return {"Messages": self.batches.pop(0)}
        # Mimic a short long-poll so idle loops do not spin.
        time.sleep(0.01)
        return {}

    def delete_message(self, **kwargs: Any) -> None:
        self.deleted.append(kwargs["ReceiptHandle"])

    def change_message_visibility(self, **kwargs: Any) -> None:
        self.visibility.append((kwargs["ReceiptHandle"], kwargs["VisibilityTimeout"]))

    def send_message(self, **kwargs: Any) -> Dict[str, Any]:
        self.sent.append(kwargs)
        return {"MessageId": f"dlq-{len(self.sent)}"}

    def close(self) -> None:
        self.closed = True


def sqs_message(body: str, *, receipt: str = "r1", receive_count: int = 1, attributes=None) -> Dict[str, Any]:  # noqa: ANN001
    return {
        "MessageId": f"m-{receipt}",
        "ReceiptHandle": receipt,
        "Body": body,
        "Attributes": {"ApproximateReceiveCount": str(receive_count)},
        "MessageAttributes": {
            name: {"DataType": "String", "StringValue": value} for name, value in (attributes or {}).items()
        },
    }


@pytest.fixture()
def make_device():
    def _make(device_id: str = "D1", **overrides: Any) -> DeviceRecord:
        values: Dict[str, Any] = {
            "device_id": device_id,
            "device_name": f"Trap {device_id}",
            "device_type": "MouseTrap",
            "location_id": "L1",
            "location_name": "Warehouse",
            "battery_level": 80,
            "status": DeviceStatus.ACTIVE,
            "installation_date": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        values.update(overrides)
        return DeviceRecord(**values)

    return _make


@pytest.fixture()
def fake_registry_cls():
    return FakeRegistry


@pytest.fixture()
def stub_sqs_cls():
    return StubSQSClient


@pytest.fixture()
def make_sqs_message():
    return sqs_message
