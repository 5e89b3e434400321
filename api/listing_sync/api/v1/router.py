"""
Router principal de la API v1.
Agrupa todos los endpoints de la version 1.
"""
from fastapi import APIRouter

from listing_sync.api.v1.endpoints import integration, sync, webhooks


api_router = APIRouter(prefix="/v1")

api_router.include_router(sync.router)
api_router.include_router(integration.router)
api_router.include_router(webhooks.router)
