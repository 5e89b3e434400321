"""
Dependencias para inyeccion de casos de uso.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.application.use_cases.integration_use_cases import IntegrationUseCases
from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.application.use_cases.webhook_use_cases import WebhookUseCases
from listing_sync.infrastructure.database.session import get_db


def get_sync_orchestrator(db: AsyncSession = Depends(get_db)) -> SyncOrchestrator:
    """
    Dependencia para obtener el orquestador de sincronización.

    Returns:
        SyncOrchestrator: Orquestador ligado a la sesión del request
    """
    return SyncOrchestrator(db)


def get_integration_use_cases(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> IntegrationUseCases:
    return IntegrationUseCases(orchestrator.db, orchestrator)


def get_webhook_use_cases(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> WebhookUseCases:
    return WebhookUseCases(orchestrator.db, orchestrator=orchestrator, clock=orchestrator.now)
