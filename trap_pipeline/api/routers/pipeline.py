"""Pipeline status endpoint."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from trap_pipeline.api.dependencies import get_supervisor
from trap_pipeline.workers.supervisor import PipelineSupervisor

router = APIRouter()


@router.get("/status", summary="Consumer counters and last aggregation results")
def pipeline_status(supervisor: Optional[PipelineSupervisor] = Depends(get_supervisor)) -> Dict[str, Any]:
    if supervisor is None:
        return {"enabled": False, "running": False, "consumer": None, "aggregation": None}
    return {"enabled": True, **supervisor.status()}
