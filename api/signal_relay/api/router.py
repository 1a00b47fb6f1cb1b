from fastapi import APIRouter

from signal_relay.api.routes import health, ingest, mirror, queues, role_sync, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(ingest.router, prefix="/ingest", tags=["connector"])
api_router.include_router(mirror.router, prefix="/mirror", tags=["mirror"])
api_router.include_router(role_sync.router, prefix="/role-sync", tags=["role-sync"])
api_router.include_router(queues.router, prefix="/queues", tags=["workers"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["payments"])
