"""
Modelos de base de datos (ORM).

- listings / attachments: store local de contenido
- sync_*: estado persistido del motor (jobs, cursores, errores, mutex)
- webhook_events, media_mappings, field_specs, system_settings: soporte
"""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from listing_sync.infrastructure.database.session import Base


class ListingModel(Base):
    """
    Listing local.

    fields guarda los valores por nombre local (FieldSpec.name) y
    field_modified_at el timestamp ISO de la última escritura de cada campo.
    modified_at solo lo mueven ediciones locales: las escrituras del sync
    no lo tocan para no re-detectarse como cambio local.
    """

    __tablename__ = "listings"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=True)
    fields = Column(JSON, nullable=False, default=dict)
    field_modified_at = Column(JSON, nullable=False, default=dict)
    remote_record_id = Column(String(64), nullable=True, unique=True, index=True)
    remote_last_modified = Column(DateTime(timezone=True), nullable=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    modified_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Listing(id={self.id}, remote={self.remote_record_id})>"


class AttachmentModel(Base):
    """Archivo de media almacenado bajo MEDIA_ROOT."""

    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=True, index=True)
    filename = Column(String(255), nullable=False)
    file_path = Column(String(1024), nullable=False)
    mime_type = Column(String(100), nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    content_hash = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MediaMappingModel(Base):
    """Relación attachment local <-> attachment Airtable, con fingerprint."""

    __tablename__ = "media_mappings"
    __table_args__ = (
        UniqueConstraint("listing_id", "field_name", "attachment_id", name="uq_media_mapping_attachment"),
    )

    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    field_name = Column(String(100), nullable=False)
    attachment_id = Column(Integer, ForeignKey("attachments.id"), nullable=False)
    remote_attachment_id = Column(String(64), nullable=True, index=True)
    remote_fingerprint = Column(String(128), nullable=True)
    content_hash = Column(String(64), nullable=True)
    source = Column(String(10), nullable=False, default="remote")
    synced_at = Column(DateTime(timezone=True), nullable=False)


class SyncJobModel(Base):
    """Historial de jobs; el job en curso se checkpointea por batch."""

    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True)
    direction = Column(String(20), nullable=False)
    mode = Column(String(10), nullable=False)
    force_full = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    total_processed = Column(Integer, nullable=False, default=0)
    created = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    media_synced = Column(Integer, nullable=False, default=0)
    changes_processed = Column(Integer, nullable=False, default=0)
    degraded = Column(Boolean, nullable=False, default=False)
    error_kind = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)


class SyncLockModel(Base):
    """
    Mutex de jobs con lease. Una sola fila por nombre de lock.
    version permite tomar el lock con UPDATE condicional (optimistic locking).
    """

    __tablename__ = "sync_locks"

    name = Column(String(50), primary_key=True)
    holder_job_id = Column(String(36), nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0)


class SyncCursorModel(Base):
    """Cursor incremental por dirección."""

    __tablename__ = "sync_cursors"

    direction = Column(String(20), primary_key=True)
    cursor_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SyncErrorModel(Base):
    """Log de errores append-only."""

    __tablename__ = "sync_errors"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(36), nullable=True, index=True)
    record_id = Column(String(64), nullable=True)
    error_kind = Column(String(30), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class WebhookEventModel(Base):
    """Evento de webhook recibido; idempotency_key = record_id + last_modified."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String(128), nullable=False, unique=True, index=True)
    event_type = Column(String(20), nullable=False)
    record_id = Column(String(64), nullable=False, index=True)
    remote_last_modified = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class FieldSpecModel(Base):
    """Override persistido del mapeo de campos."""

    __tablename__ = "field_specs"

    name = Column(String(100), primary_key=True)
    remote_field = Column(String(255), nullable=False, unique=True)
    category = Column(String(30), nullable=False)
    data_type = Column(String(30), nullable=False, default="string")
    allowed_values = Column(JSON, nullable=True)
    media_type = Column(String(20), nullable=True)
    max_files = Column(Integer, nullable=True)


class SystemSettingsModel(Base):
    """Configuraciones clave/valor (p.ej. credenciales de conexión editadas desde el API)."""

    __tablename__ = "system_settings"

    key = Column(String(255), primary_key=True, index=True)
    value = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
