"""Fixed-interval scheduling loop for the aggregation jobs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from trap_pipeline.core.timing import sleep_unless_set
from trap_pipeline.services.aggregation import AggregationJob

logger = logging.getLogger(__name__)


class AggregationScheduler:
    """Runs every job once per cycle, then sleeps.

    A failing job is logged and does not affect the other jobs or later
    cycles; a cycle with any failure is followed by ``error_backoff_seconds``
    instead of the normal interval.
    """

    def __init__(
        self,
        jobs: Sequence[AggregationJob],
        *,
        interval_seconds: float,
        error_backoff_seconds: float,
    ) -> None:
        self._jobs = list(jobs)
        self._interval = interval_seconds
        self._error_backoff = error_backoff_seconds
        self.cycles = 0
        self.last_results: Dict[str, Dict[str, Any]] = {}

    async def run(self, shutdown: asyncio.Event) -> None:
        logger.info(
            "aggregation_scheduler_started",
            extra={"jobs": [job.name for job in self._jobs], "interval_seconds": self._interval},
        )
        while not shutdown.is_set():
            had_error = await self.run_once(shutdown)
            if shutdown.is_set():
                break
            delay = self._error_backoff if had_error else self._interval
            await sleep_unless_set(shutdown, delay)
        logger.info("aggregation_scheduler_stopped", extra={"cycles": self.cycles})

    async def run_once(self, shutdown: Optional[asyncio.Event] = None) -> bool:
        """Run each job once; returns True if any job failed."""

        had_error = False
        for job in self._jobs:
            if shutdown is not None and shutdown.is_set():
                break
            logger.info("aggregation_job_started", extra={"job": job.name})
            try:
                result = await job.run()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - one job must not stop the loop
                had_error = True
                logger.exception("aggregation_job_failed", extra={"job": job.name})
                self.last_results[job.name] = {
                    "job": job.name,
                    "failed_at": datetime.now(timezone.utc).isoformat(),
                    "error": str(exc),
                }
                continue
            self.last_results[job.name] = result.as_dict()
            logger.info(
                "aggregation_job_completed",
                extra={"job": job.name, "rows_written": result.rows_written, "run_id": str(result.run_id)},
            )
        self.cycles += 1
        return had_error
