"""V1 API router aggregation."""
from fastapi import APIRouter

from app.api.v1.endpoints import compose, queue, settings, threads, webhooks

api_router = APIRouter(prefix="/v1")
api_router.include_router(threads.router)
api_router.include_router(queue.router)
api_router.include_router(compose.router)
api_router.include_router(settings.router)
api_router.include_router(webhooks.router)
