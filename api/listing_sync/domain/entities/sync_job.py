"""
Entidades del ciclo de vida de un job de sincronización.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from listing_sync.domain.entities.field_spec import Side, SyncDirection


class JobStatus(str, Enum):
    """Idle no se persiste: es la ausencia de job con el mutex tomado."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobMode(str, Enum):
    FULL = "full"
    DELTA = "delta"


class ErrorKind(str, Enum):
    CONFIG_INVALID = "config_invalid"
    CONNECTIVITY = "connectivity"
    RECORD = "record"
    MAPPING = "mapping"
    MEDIA = "media"
    WEBHOOK = "webhook"
    STALE_JOB = "stale_job"
    INTERNAL = "internal"


@dataclass
class SyncStats:
    """
    Contadores de un job. Solo se incrementan mientras el job corre.
    """

    total_processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    media_synced: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_processed": self.total_processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "media_synced": self.media_synced,
        }


@dataclass
class SyncJob:
    """Job de sync. Lo muta únicamente el orquestador."""

    direction: SyncDirection
    mode: JobMode
    started_at: datetime
    force_full: bool = False
    since: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.RUNNING
    finished_at: Optional[datetime] = None
    stats: SyncStats = field(default_factory=SyncStats)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    degraded: bool = False
    changes_processed: int = 0

    def complete(self, now: datetime) -> None:
        self.status = JobStatus.COMPLETED
        self.finished_at = now

    def fail(self, kind: ErrorKind, message: str, now: datetime) -> None:
        self.status = JobStatus.FAILED
        self.error_kind = kind
        self.error_message = message
        self.finished_at = now

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.id,
            "direction": self.direction.value,
            "mode": self.mode.value,
            "force_full": self.force_full,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stats": self.stats.to_dict(),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "degraded": self.degraded,
            "changes_processed": self.changes_processed,
        }


@dataclass(frozen=True)
class ChangeRecord:
    """
    Registro detectado como modificado desde un cursor.

    payload lleva el snapshot que originó el cambio (LocalRecord o
    AirtableRecord) para no volver a leerlo durante el job.
    """

    record_id: str
    source: Side
    changed_fields: tuple[str, ...]
    changed_at: datetime
    payload: Any = None


@dataclass(frozen=True)
class ChangeSet:
    changes: list[ChangeRecord]
    degraded: bool = False

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def max_changed_at(self) -> Optional[datetime]:
        if not self.changes:
            return None
        return max(c.changed_at for c in self.changes)


@dataclass(frozen=True)
class LocalRecord:
    """Snapshot de un listing local en el formato que consume el mapper."""

    listing_id: int
    remote_record_id: Optional[str]
    fields: dict[str, Any]
    field_modified_at: dict[str, datetime]
    modified_at: datetime

    def field_timestamp(self, name: str) -> datetime:
        """Timestamp por campo; si no existe, el del registro."""
        return self.field_modified_at.get(name) or self.modified_at


@dataclass
class MergeResult:
    """
    Resultado de mezclar un registro hacia target_side.

    values contiene los valores a escribir, con nombres del lado destino
    (nombres locales si target_side es local, columnas Airtable si es remoto).
    """

    target_side: Side
    fields_written: list[str] = field(default_factory=list)
    fields_skipped: list[str] = field(default_factory=list)
    conflicts_resolved: int = 0
    values: dict[str, Any] = field(default_factory=dict)
    media_fields: dict[str, Any] = field(default_factory=dict)
    unmapped: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.fields_written)

    def write(self, field_name: str, target_key: str, value: Any) -> None:
        self.fields_written.append(field_name)
        self.values[target_key] = value

    def skip(self, field_name: str) -> None:
        self.fields_skipped.append(field_name)
