"""Cancellable sleeps shared by the long-running loops."""

from __future__ import annotations

import asyncio


async def sleep_unless_set(event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; return early (True) once ``event`` is set."""

    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True
