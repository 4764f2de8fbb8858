"""Router registrations."""

from fastapi import APIRouter

from trap_pipeline.api.routers import health, pipeline


def get_api_router() -> APIRouter:
    router = APIRouter()
    router.include_router(health.router, tags=["health"])
    router.include_router(pipeline.router, prefix="/api/v1/pipeline", tags=["pipeline"])
    return router
