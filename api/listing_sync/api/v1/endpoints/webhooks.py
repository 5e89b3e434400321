"""
Endpoint público para webhooks de Airtable.
"""
import json

from fastapi import APIRouter, Depends, Request

from listing_sync.application.dto.sync_dto import WebhookResultDTO
from listing_sync.application.use_cases.webhook_use_cases import SIGNATURE_HEADER, WebhookUseCases
from listing_sync.api.v1.dependencies.use_case_deps import get_webhook_use_cases
from listing_sync.shared.exceptions.sync import WebhookValidationException

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/airtable", response_model=WebhookResultDTO)
async def airtable_webhook(
    request: Request,
    use_cases: WebhookUseCases = Depends(get_webhook_use_cases),
) -> WebhookResultDTO:
    """
    Recibe notificaciones de cambios de registros.

    - 400 si el payload está mal formado
    - 401 si la firma HMAC no coincide (cuando hay secreto configurado)
    - 500 si falla la aplicación del cambio, para que el emisor reintente
    """
    body = await request.body()
    use_cases.verify_signature(body, request.headers.get(SIGNATURE_HEADER))
    try:
        raw = json.loads(body or b"null")
    except ValueError as e:
        raise WebhookValidationException("El cuerpo del webhook no es JSON válido") from e
    return await use_cases.process_webhook(raw)
