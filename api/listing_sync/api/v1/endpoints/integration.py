"""
Endpoints de administración de la integración con Airtable.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from listing_sync.application.dto.sync_dto import (
    ConnectionConfigUpdateDTO,
    ConnectionTestRequestDTO,
    ConnectionTestResponseDTO,
    FieldMappingResponseDTO,
    FieldMappingUpdateDTO,
    FieldMappingUpdateResponseDTO,
    MediaSyncRequestDTO,
    MediaSyncResponseDTO,
    RegisterWebhookRequestDTO,
    SchemaResponseDTO,
)
from listing_sync.application.use_cases.integration_use_cases import IntegrationUseCases
from listing_sync.api.v1.dependencies.use_case_deps import get_integration_use_cases

router = APIRouter(prefix="/integration", tags=["Integration"])


@router.post("/test-connection", response_model=ConnectionTestResponseDTO)
async def test_connection(
    dto: ConnectionTestRequestDTO = ConnectionTestRequestDTO(),
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> ConnectionTestResponseDTO:
    """Prueba credenciales sin usar la configuración guardada."""
    return await use_cases.test_connection(dto)


@router.get("/config")
async def get_connection_config(
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> Dict[str, Any]:
    return await use_cases.get_connection_config()


@router.put("/config")
async def update_connection_config(
    dto: ConnectionConfigUpdateDTO,
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> Dict[str, Any]:
    return await use_cases.update_connection_config(dto)


@router.get("/schema", response_model=SchemaResponseDTO)
async def get_schema(
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> SchemaResponseDTO:
    return await use_cases.get_schema()


@router.get("/field-mapping", response_model=FieldMappingResponseDTO)
async def get_field_mapping(
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> FieldMappingResponseDTO:
    return await use_cases.get_field_mapping()


@router.put("/field-mapping", response_model=FieldMappingUpdateResponseDTO)
async def update_field_mapping(
    dto: FieldMappingUpdateDTO,
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> FieldMappingUpdateResponseDTO:
    """Reemplaza el mapeo de campos. Responde 409 si hay un job en curso."""
    return await use_cases.update_field_mapping(dto)


@router.post("/webhooks/register")
async def register_webhook(
    dto: RegisterWebhookRequestDTO,
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> Dict[str, Any]:
    return await use_cases.register_webhook(dto.notification_url)


@router.post("/media/sync", response_model=MediaSyncResponseDTO)
async def sync_media(
    dto: MediaSyncRequestDTO,
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> MediaSyncResponseDTO:
    return await use_cases.sync_media(dto)


@router.post("/media/cleanup")
async def cleanup_orphaned_media(
    confirm: bool = Query(False, description="Si es False solo devuelve el preview"),
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> Dict[str, Any]:
    return await use_cases.cleanup_orphaned_media(confirm=confirm)


@router.get("/media/stats")
async def get_media_statistics(
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> Dict[str, Any]:
    return await use_cases.get_media_statistics()
