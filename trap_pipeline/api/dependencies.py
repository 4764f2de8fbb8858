"""Dependency injection helpers for FastAPI routes."""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from trap_pipeline.workers.supervisor import PipelineSupervisor


def get_supervisor(request: Request) -> Optional[PipelineSupervisor]:
    return getattr(request.app.state, "supervisor", None)
