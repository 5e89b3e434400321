"""
Casos de uso de administración de la integración con Airtable:
conexión, esquema, mapeo de campos, estado/historial y media.
"""
import asyncio
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.application.dto.sync_dto import (
    ConnectionConfigUpdateDTO,
    ConnectionTestRequestDTO,
    ConnectionTestResponseDTO,
    FieldMappingResponseDTO,
    FieldMappingUpdateDTO,
    FieldMappingUpdateResponseDTO,
    MediaSyncRequestDTO,
    MediaSyncResponseDTO,
    SchemaResponseDTO,
    SyncErrorDTO,
    SyncHistoryResponseDTO,
    SyncJobResponseDTO,
    SyncStatusResponseDTO,
)
from listing_sync.application.services.change_detector import ChangeDetector
from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.core.config import settings
from listing_sync.domain.entities import FieldSpecSet, JobStatus, SyncDirection, SyncJob
from listing_sync.infrastructure.external.airtable_sync.connection_config import ConnectionConfig
from listing_sync.shared.exceptions.sync import (
    ConfigInvalidException,
    FieldMappingInvalidException,
    SyncAlreadyInProgressException,
    SyncException,
)

MAX_HISTORY_PAGE = 200
CRITICAL_ERROR_COUNT = 10


def job_to_dto(job: SyncJob) -> SyncJobResponseDTO:
    return SyncJobResponseDTO(**job.to_dict())


class IntegrationUseCases:
    def __init__(self, db: AsyncSession, orchestrator: Optional[SyncOrchestrator] = None):
        self.db = db
        self.orchestrator = orchestrator or SyncOrchestrator(db)
        self.ledger = self.orchestrator.ledger
        self.connection = self.orchestrator.connection

    async def _require_config(self) -> ConnectionConfig:
        config = await self.connection.load()
        if not config.validate():
            raise ConfigInvalidException(config.missing_fields())
        return config

    # ------------------------------------------------------------------
    # Conexión
    # ------------------------------------------------------------------

    async def test_connection(self, dto: ConnectionTestRequestDTO) -> ConnectionTestResponseDTO:
        """
        Prueba credenciales sin persistirlas.

        Solo cuentan las credenciales del request: la configuración guardada
        (y el token del entorno) no completan los campos omitidos.
        """
        config = replace(
            ConnectionConfig.from_settings(settings),
            token=dto.token or "",
            base_id=dto.base_id or "",
            table_name=dto.table_name or "",
        )
        if not config.validate():
            missing = ", ".join(config.missing_fields())
            return ConnectionTestResponseDTO(
                success=False, message="Configuración incompleta", error_detail=f"Faltan: {missing}"
            )

        ctx = await self.orchestrator.build_context(config, with_media=False)
        result = await asyncio.to_thread(ctx.client.test_connection)
        if not result.success:
            logger.warning(f"Test de conexión Airtable fallido: {result.message}")
            return ConnectionTestResponseDTO(
                success=False, message="No se pudo conectar con Airtable", error_detail=result.message
            )

        tables = await asyncio.to_thread(ctx.client.list_tables)
        names = [t.get("name") for t in tables.data or []] if tables.success else []
        return ConnectionTestResponseDTO(
            success=True,
            message=f"Conexión correcta con la tabla '{config.table_name}'",
            tables=names,
            records_found=(result.data or {}).get("records_found"),
        )

    async def get_connection_config(self) -> Dict[str, Any]:
        return (await self.connection.load()).to_public_dict()

    async def update_connection_config(self, dto: ConnectionConfigUpdateDTO) -> Dict[str, Any]:
        config = await self.connection.save(dto.model_dump(exclude_none=True))
        await self.db.commit()
        logger.info(f"Configuración de conexión actualizada (tabla={config.table_name})")
        return config.to_public_dict()

    async def register_webhook(self, notification_url: str) -> Dict[str, Any]:
        config = await self._require_config()
        ctx = await self.orchestrator.build_context(config, with_media=False)
        result = await asyncio.to_thread(ctx.client.register_webhook, notification_url)
        if not result.success:
            raise SyncException(
                message="Airtable rechazó el registro del webhook",
                status_code=502,
                error_code="REMOTE_ERROR",
                details={"reason": result.message, "status_code": result.status_code},
            )
        data = result.data or {}
        logger.info(f"Webhook registrado en Airtable: {data.get('id')}")
        return {"webhook_id": data.get("id"), "expiration_time": data.get("expirationTime")}

    # ------------------------------------------------------------------
    # Esquema y mapeo
    # ------------------------------------------------------------------

    async def get_schema(self) -> SchemaResponseDTO:
        config = await self._require_config()
        ctx = await self.orchestrator.build_context(config, with_media=False)
        result = await asyncio.to_thread(ctx.client.get_table_schema)
        if not result.success:
            raise SyncException(
                message=result.message or "No se pudo leer el esquema de Airtable",
                status_code=404 if result.status_code == 404 else 502,
                error_code="REMOTE_ERROR",
            )
        data = result.data
        return SchemaResponseDTO(
            table=data["table"], table_id=data.get("table_id"), fields=data["fields"], field_count=len(data["fields"])
        )

    async def get_field_mapping(self) -> FieldMappingResponseDTO:
        registry = await self.orchestrator.field_specs.load_registry()
        fields = [spec.to_dict() for spec in registry.specs]
        return FieldMappingResponseDTO(fields=fields, count=len(fields))

    async def update_field_mapping(self, dto: FieldMappingUpdateDTO) -> FieldMappingUpdateResponseDTO:
        """
        Reemplaza el set de FieldSpec. No se permite mientras corre un job:
        el registry es inmutable durante el job.
        """
        holder = await self.ledger.current_holder(self.orchestrator.now())
        if holder:
            raise SyncAlreadyInProgressException(holder)

        specs = [f.to_entity() for f in dto.fields]
        errors = FieldSpecSet(specs).validation_errors()
        if errors:
            raise FieldMappingInvalidException(errors)

        accepted = await self.orchestrator.field_specs.replace_all(specs)
        await self.db.commit()
        logger.info(f"Mapeo de campos actualizado: {accepted} campo(s)")
        return FieldMappingUpdateResponseDTO(valid=True, accepted=accepted)

    # ------------------------------------------------------------------
    # Estado e historial
    # ------------------------------------------------------------------

    async def get_sync_status(self) -> SyncStatusResponseDTO:
        now = self.orchestrator.now()
        config = await self.connection.load()
        holder = await self.ledger.current_holder(now)
        last = await self.ledger.last_finished_job()

        cursor = await self.ledger.get_cursor(SyncDirection.LOCAL_TO_REMOTE)
        pending = await ChangeDetector(self.orchestrator.listings, None).pending_local_count(cursor)

        window_start = now - timedelta(hours=settings.SYNC_ERROR_WINDOW_HOURS)
        error_count = await self.ledger.count_errors(since=window_start)
        recent = await self.ledger.recent_errors(limit=10)

        if not config.validate():
            health = "not_configured"
        elif (last and last.status is JobStatus.FAILED) or error_count >= CRITICAL_ERROR_COUNT:
            health = "critical"
        elif error_count:
            health = "warning"
        else:
            health = "healthy"

        return SyncStatusResponseDTO(
            last_sync=job_to_dto(last) if last else None,
            sync_in_progress=holder is not None,
            current_job_id=holder,
            pending_changes=pending,
            recent_errors=[SyncErrorDTO(**e) for e in recent],
            error_count=error_count,
            health_status=health,
            is_configured=config.validate(),
        )

    async def get_sync_history(self, limit: int = 50, offset: int = 0) -> SyncHistoryResponseDTO:
        limit = max(1, min(limit, MAX_HISTORY_PAGE))
        offset = max(0, offset)
        jobs, total = await self.ledger.list_jobs(limit=limit, offset=offset)
        return SyncHistoryResponseDTO(jobs=[job_to_dto(j) for j in jobs], total=total, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def sync_media(self, dto: MediaSyncRequestDTO) -> MediaSyncResponseDTO:
        config = await self._require_config()
        ctx = await self.orchestrator.build_context(config, with_media=True)
        media_types = [m.value for m in dto.media_types] if dto.media_types else None
        results = await ctx.media.sync_media_for_records(dto.record_ids, media_types, force=dto.force)
        await self.db.commit()
        return MediaSyncResponseDTO(results=results)

    async def cleanup_orphaned_media(self, confirm: bool = False) -> Dict[str, Any]:
        ctx = await self.orchestrator.build_context(with_media=True)
        result = await ctx.media.cleanup_orphaned_media(confirm=confirm)
        if confirm:
            await self.db.commit()
        return result

    async def get_media_statistics(self) -> Dict[str, Any]:
        ctx = await self.orchestrator.build_context(with_media=True)
        return await ctx.media.get_sync_statistics()
