from fastapi import APIRouter

from app.api.routes import embeddings, health, processing, resolve, system
from app.core.config import get_settings


def get_api_router() -> APIRouter:
    settings = get_settings()
    router = APIRouter(prefix=settings.api_prefix)
    router.include_router(health.router)
    router.include_router(processing.router)
    router.include_router(embeddings.router)
    router.include_router(resolve.router)
    router.include_router(system.router)
    return router
