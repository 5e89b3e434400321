"""
Casos de uso de la aplicacion.
"""
from .integration_use_cases import IntegrationUseCases
from .sync_orchestrator import SyncOrchestrator
from .webhook_use_cases import WebhookUseCases

__all__ = ["IntegrationUseCases", "SyncOrchestrator", "WebhookUseCases"]
