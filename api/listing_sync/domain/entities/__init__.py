"""
Entidades de dominio del motor de sincronización.
"""
from listing_sync.domain.entities.field_spec import (
    DataType,
    FieldCategory,
    FieldSpec,
    FieldSpecSet,
    MediaType,
    Side,
    SyncDirection,
)
from listing_sync.domain.entities.sync_job import (
    ChangeRecord,
    ChangeSet,
    ErrorKind,
    JobMode,
    JobStatus,
    LocalRecord,
    MergeResult,
    SyncJob,
    SyncStats,
)


__all__ = [
    "ChangeRecord",
    "ChangeSet",
    "DataType",
    "ErrorKind",
    "FieldCategory",
    "FieldSpec",
    "FieldSpecSet",
    "JobMode",
    "JobStatus",
    "LocalRecord",
    "MediaType",
    "MergeResult",
    "Side",
    "SyncDirection",
    "SyncJob",
    "SyncStats",
]
