"""Lifecycle owner for the queue consumer and the aggregation scheduler."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import boto3
import httpx

from trap_pipeline.core.config import AppSettings
from trap_pipeline.core.database import init_db
from trap_pipeline.events_engine.consumers.telemetry import TelemetrySQSEventConsumer, build_telemetry_consumer
from trap_pipeline.events_engine.processor import EventProcessor
from trap_pipeline.events_engine.publisher import build_dead_letter_publisher
from trap_pipeline.services.aggregation import DailyAggregationJob, LocationRiskJob
from trap_pipeline.services.archiver import RawArchiver
from trap_pipeline.services.blob_store import build_blob_store
from trap_pipeline.services.reconciler import DeviceStateReconciler
from trap_pipeline.services.registry_client import RegistryClient, build_registry_http_client
from trap_pipeline.services.transformer import ProcessedRecordWriter
from trap_pipeline.workers.scheduler import AggregationScheduler

logger = logging.getLogger(__name__)


@dataclass
class PipelineClients:
    """Process-wide client handles, opened once per supervisor run."""

    sqs: Any
    s3: Any
    http: httpx.AsyncClient


ClientsFactory = Callable[[AppSettings], Any]


@asynccontextmanager
async def open_clients(settings: AppSettings) -> AsyncIterator[PipelineClients]:
    """Open the SQS, S3 and Registry clients and close them on every exit path."""

    async with AsyncExitStack() as stack:
        session = boto3.session.Session(
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
        sqs = session.client("sqs", endpoint_url=settings.sqs_endpoint_url)
        stack.callback(sqs.close)
        s3 = session.client("s3", endpoint_url=settings.s3_endpoint_url)
        stack.callback(s3.close)
        http = await stack.enter_async_context(
            build_registry_http_client(settings.registry_base_url, settings.registry_timeout_seconds)
        )
        yield PipelineClients(sqs=sqs, s3=s3, http=http)


def build_pipeline(
    settings: AppSettings,
    clients: PipelineClients,
) -> Tuple[Optional[TelemetrySQSEventConsumer], AggregationScheduler]:
    """Wire the consumer and scheduler around already-open clients."""

    registry = RegistryClient(clients.http)
    processor = EventProcessor(
        archiver=RawArchiver(build_blob_store(client=clients.s3, bucket=settings.raw_bucket, name="raw")),
        record_writer=ProcessedRecordWriter(
            build_blob_store(client=clients.s3, bucket=settings.processed_bucket, name="processed")
        ),
        reconciler=DeviceStateReconciler(registry, conflict_retries=settings.registry_conflict_retries),
        registry=registry if settings.mark_events_processed else None,
    )

    consumer: Optional[TelemetrySQSEventConsumer] = None
    if settings.sqs_queue_url:
        consumer = build_telemetry_consumer(
            settings,
            processor=processor,
            sqs_client=clients.sqs,
            dead_letter_publisher=build_dead_letter_publisher(
                client=clients.sqs,
                queue_url=settings.dead_letter_queue_url,
            ),
        )
    else:
        logger.warning("pipeline_consumer_disabled", extra={"reason": "sqs_queue_url_not_configured"})

    risk_window = timedelta(hours=settings.risk_window_hours)
    scheduler = AggregationScheduler(
        [
            DailyAggregationJob(registry),
            LocationRiskJob(
                registry,
                window=risk_window,
                medium_threshold=settings.risk_medium_threshold,
                high_threshold=settings.risk_high_threshold,
            ),
        ],
        interval_seconds=settings.aggregation_interval_seconds,
        error_backoff_seconds=settings.error_backoff_seconds,
    )
    return consumer, scheduler


class PipelineSupervisor:
    """Starts the consumer and scheduler loops and shuts them down together.

    Both loops share one shutdown event. ``stop`` gives in-flight work up to
    ``shutdown_grace_seconds`` to finish, cancels what is left, then releases
    every client and re-arms the event so the supervisor can be started again.
    Task failures are logged, never raised.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        clients_factory: ClientsFactory = open_clients,
        prepare_database: Optional[Callable[[], None]] = init_db,
    ) -> None:
        self._settings = settings
        self._clients_factory = clients_factory
        self._prepare_database = prepare_database
        self._shutdown = asyncio.Event()
        self._stack: Optional[AsyncExitStack] = None
        self._tasks: List[asyncio.Task] = []
        self.consumer: Optional[TelemetrySQSEventConsumer] = None
        self.scheduler: Optional[AggregationScheduler] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown

    async def start(self) -> None:
        if self._tasks:
            logger.warning("pipeline_already_started")
            return

        if self._prepare_database is not None:
            await asyncio.to_thread(self._prepare_database)

        stack = AsyncExitStack()
        try:
            clients = await stack.enter_async_context(self._clients_factory(self._settings))
            self.consumer, self.scheduler = build_pipeline(self._settings, clients)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack

        if self.consumer is not None:
            self._tasks.append(
                asyncio.create_task(self._supervise("consumer", self.consumer.run(self._shutdown)), name="consumer")
            )
        self._tasks.append(
            asyncio.create_task(self._supervise("scheduler", self.scheduler.run(self._shutdown)), name="scheduler")
        )
        logger.info("pipeline_started", extra={"tasks": [task.get_name() for task in self._tasks]})

    async def stop(self) -> None:
        self._shutdown.set()
        try:
            if self._tasks:
                _, pending = await asyncio.wait(self._tasks, timeout=self._settings.shutdown_grace_seconds)
                if pending:
                    logger.warning(
                        "pipeline_shutdown_grace_exceeded",
                        extra={"tasks": [task.get_name() for task in pending]},
                    )
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self._tasks = []
            self._shutdown.clear()
            if self._stack is not None:
                stack, self._stack = self._stack, None
                await stack.aclose()
        logger.info("pipeline_stopped")

    async def run_until_shutdown(self) -> None:
        """Start, block until the shutdown event is set, then stop."""

        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "consumer": None
            if self.consumer is None
            else {"queue_url": self.consumer.queue_url, **self.consumer.stats.as_dict()},
            "aggregation": None
            if self.scheduler is None
            else {"cycles": self.scheduler.cycles, "last_results": dict(self.scheduler.last_results)},
        }

    async def _supervise(self, name: str, coro: Any) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("pipeline_task_crashed", extra={"task": name})
