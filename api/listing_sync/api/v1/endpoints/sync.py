"""
Endpoints de sincronización Airtable <-> listings locales.
"""
from fastapi import APIRouter, Depends, Query, status

from listing_sync.application.dto.sync_dto import (
    DeltaSyncRequestDTO,
    FullSyncRequestDTO,
    SingleRecordSyncRequestDTO,
    SingleRecordSyncResponseDTO,
    SyncHistoryResponseDTO,
    SyncJobResponseDTO,
    SyncStatusResponseDTO,
)
from listing_sync.application.use_cases.integration_use_cases import IntegrationUseCases, job_to_dto
from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.api.v1.dependencies.use_case_deps import (
    get_integration_use_cases,
    get_sync_orchestrator,
)

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post(
    "/full",
    response_model=SyncJobResponseDTO,
    status_code=status.HTTP_200_OK,
    summary="Sincronización completa",
)
async def run_full_sync(
    dto: FullSyncRequestDTO = FullSyncRequestDTO(),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncJobResponseDTO:
    """
    Ejecuta un sync completo en la dirección indicada.

    Un job fallido (config inválida, sin conectividad) se devuelve con
    status=failed y error_kind; si ya hay un job en curso responde 409.
    """
    job = await orchestrator.run_full_sync(direction=dto.direction, force_full=dto.force_full)
    return job_to_dto(job)


@router.post("/delta", response_model=SyncJobResponseDTO, summary="Sincronización incremental")
async def run_delta_sync(
    dto: DeltaSyncRequestDTO = DeltaSyncRequestDTO(),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncJobResponseDTO:
    job = await orchestrator.run_delta_sync(since=dto.since, direction=dto.direction)
    return job_to_dto(job)


@router.post("/record", response_model=SingleRecordSyncResponseDTO, summary="Sincronizar un registro")
async def sync_single_record(
    dto: SingleRecordSyncRequestDTO,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SingleRecordSyncResponseDTO:
    result = await orchestrator.sync_single_record(dto.record_id, dto.direction)
    return SingleRecordSyncResponseDTO(**result.to_dict())


@router.get("/status", response_model=SyncStatusResponseDTO, summary="Estado de la sincronización")
async def get_sync_status(
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> SyncStatusResponseDTO:
    return await use_cases.get_sync_status()


@router.get("/history", response_model=SyncHistoryResponseDTO, summary="Historial de jobs")
async def get_sync_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    use_cases: IntegrationUseCases = Depends(get_integration_use_cases),
) -> SyncHistoryResponseDTO:
    return await use_cases.get_sync_history(limit=limit, offset=offset)
