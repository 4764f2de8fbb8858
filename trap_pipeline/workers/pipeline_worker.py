"""Headless entry point: ``python -m trap_pipeline.workers.pipeline_worker``."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from trap_pipeline.core.config import get_settings
from trap_pipeline.core.logging import configure_logging
from trap_pipeline.workers.supervisor import PipelineSupervisor

logger = logging.getLogger(__name__)


async def run_pipeline() -> None:
    supervisor = PipelineSupervisor(get_settings())
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, supervisor.shutdown_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            pass
    await supervisor.run_until_shutdown()


def main() -> None:
    """Run the ingestion pipeline until SIGINT or SIGTERM."""
    configure_logging(get_settings())

    try:
        asyncio.run(run_pipeline())
    except KeyboardInterrupt:
        logger.info("pipeline_worker_interrupted")
    except Exception:
        logger.exception("pipeline_worker_failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
