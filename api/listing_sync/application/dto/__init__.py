"""
Data Transfer Objects (DTOs) para la capa de aplicacion.
"""
from .sync_dto import (
    DeltaSyncRequestDTO,
    FieldMappingUpdateDTO,
    FieldSpecDTO,
    FullSyncRequestDTO,
    MediaSyncRequestDTO,
    SingleRecordSyncRequestDTO,
    SyncJobResponseDTO,
    SyncStatusResponseDTO,
    WebhookPayloadDTO,
    WebhookResultDTO,
)

__all__ = [
    "DeltaSyncRequestDTO",
    "FieldMappingUpdateDTO",
    "FieldSpecDTO",
    "FullSyncRequestDTO",
    "MediaSyncRequestDTO",
    "SingleRecordSyncRequestDTO",
    "SyncJobResponseDTO",
    "SyncStatusResponseDTO",
    "WebhookPayloadDTO",
    "WebhookResultDTO",
]
