"""
DTOs de los comandos de sincronización e integración con Airtable.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from listing_sync.domain.entities import (
    DataType,
    FieldCategory,
    FieldSpec,
    MediaType,
    SyncDirection,
)


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


class FullSyncRequestDTO(BaseModel):
    direction: SyncDirection = Field(SyncDirection.BOTH, description="local_to_remote | remote_to_local | both")
    force_full: bool = Field(False, description="Reinicia cursores y re-transfiere media")


class DeltaSyncRequestDTO(BaseModel):
    since: Optional[datetime] = Field(None, description="Límite inferior; por defecto la última hora")
    direction: SyncDirection = SyncDirection.BOTH


class SingleRecordSyncRequestDTO(BaseModel):
    record_id: str = Field(..., min_length=1, description="Id local (numérico) o record id de Airtable")
    direction: SyncDirection = SyncDirection.REMOTE_TO_LOCAL


class MediaSyncRequestDTO(BaseModel):
    record_ids: List[str] = Field(..., min_length=1, max_length=500)
    media_types: Optional[List[MediaType]] = None
    force: bool = False


class ConnectionTestRequestDTO(BaseModel):
    """Credenciales a probar. No se combinan con la configuración guardada."""

    token: Optional[str] = None
    base_id: Optional[str] = None
    table_name: Optional[str] = None


class ConnectionConfigUpdateDTO(BaseModel):
    token: Optional[str] = Field(None, min_length=1)
    base_id: Optional[str] = Field(None, min_length=1)
    table_name: Optional[str] = Field(None, min_length=1)
    last_modified_field: Optional[str] = Field(None, min_length=1)
    batch_size: Optional[int] = Field(None, ge=1, le=100)
    request_delay_ms: Optional[int] = Field(None, ge=0, le=10_000)
    max_retries: Optional[int] = Field(None, ge=0, le=10)


class FieldSpecDTO(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    remote_field: str = Field(..., min_length=1, max_length=255)
    category: FieldCategory
    data_type: DataType = DataType.STRING
    allowed_values: List[str] = Field(default_factory=list)
    media_type: Optional[MediaType] = None
    max_files: Optional[int] = None

    def to_entity(self) -> FieldSpec:
        return FieldSpec(
            name=self.name,
            remote_field=self.remote_field,
            category=self.category,
            data_type=self.data_type,
            allowed_values=tuple(self.allowed_values),
            media_type=self.media_type,
            max_files=self.max_files,
        )


class FieldMappingUpdateDTO(BaseModel):
    fields: List[FieldSpecDTO] = Field(..., min_length=1)


class RegisterWebhookRequestDTO(BaseModel):
    notification_url: str = Field(..., min_length=1)

    @field_validator("notification_url")
    @classmethod
    def must_be_https(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("Airtable solo notifica a URLs https")
        return v


class WebhookPayloadDTO(BaseModel):
    """
    Notificación de cambio de un registro.

    Acepta `event` como created/updated/deleted o con prefijo record_ (record_created...).
    """

    event: str
    record_id: str = Field(..., min_length=1)
    last_modified: datetime
    fields: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("event")
    @classmethod
    def normalize_event(cls, v: str) -> str:
        event = v.strip().lower().removeprefix("record_").removeprefix("record.")
        if event not in ("created", "updated", "deleted"):
            raise ValueError(f"Evento no soportado: {v}")
        return event


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


class SyncStatsDTO(BaseModel):
    total_processed: int
    created: int
    updated: int
    skipped: int
    errors: int
    media_synced: int


class SyncJobResponseDTO(BaseModel):
    job_id: str
    direction: str
    mode: str
    force_full: bool
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    stats: SyncStatsDTO
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    degraded: bool = False
    changes_processed: int = 0


class SyncHistoryResponseDTO(BaseModel):
    jobs: List[SyncJobResponseDTO]
    total: int
    limit: int
    offset: int


class SingleRecordSyncResponseDTO(BaseModel):
    record_id: str
    direction: str
    status: str
    changed_fields: List[str]
    conflicts_resolved: int = 0
    message: str = ""


class SyncErrorDTO(BaseModel):
    timestamp: datetime
    error_kind: str
    message: str
    record_id: Optional[str] = None
    job_id: Optional[str] = None


class SyncStatusResponseDTO(BaseModel):
    last_sync: Optional[SyncJobResponseDTO] = None
    sync_in_progress: bool
    current_job_id: Optional[str] = None
    pending_changes: int
    recent_errors: List[SyncErrorDTO]
    error_count: int
    health_status: str
    is_configured: bool


class ConnectionTestResponseDTO(BaseModel):
    success: bool
    message: str
    tables: List[str] = Field(default_factory=list)
    records_found: Optional[int] = None
    error_detail: Optional[str] = None


class SchemaResponseDTO(BaseModel):
    table: str
    table_id: Optional[str] = None
    fields: List[Dict[str, Any]]
    field_count: int


class FieldMappingResponseDTO(BaseModel):
    fields: List[Dict[str, Any]]
    count: int


class FieldMappingUpdateResponseDTO(BaseModel):
    valid: bool
    accepted: int


class MediaSyncResponseDTO(BaseModel):
    results: Dict[str, Dict[str, Any]]


class WebhookResultDTO(BaseModel):
    success: bool
    duplicate: bool = False
    processed_records: int
    action: Optional[str] = None
