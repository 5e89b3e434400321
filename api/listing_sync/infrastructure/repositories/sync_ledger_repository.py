"""
Ledger de sincronización: cursores, historial de jobs, log de errores y mutex.

Es el único estado compartido entre jobs y webhooks. Las escrituras del
mutex se confirman (commit) de inmediato para que otros procesos las vean.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.domain.entities import (
    ErrorKind,
    JobMode,
    JobStatus,
    SyncDirection,
    SyncJob,
    SyncStats,
)
from listing_sync.infrastructure.database.models import (
    SyncCursorModel,
    SyncErrorModel,
    SyncJobModel,
    SyncLockModel,
)
from listing_sync.infrastructure.external.airtable_sync.types import ensure_utc

LOCK_NAME = "listing_sync"


@dataclass(frozen=True)
class LockAcquisition:
    acquired: bool
    holder_job_id: Optional[str] = None
    stale_job_id: Optional[str] = None


class SyncLedgerRepository:
    """Persistencia del estado del motor de sync."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Mutex (lease + optimistic locking)
    # ------------------------------------------------------------------

    async def _lock_row(self) -> SyncLockModel:
        row = await self.db.get(SyncLockModel, LOCK_NAME, populate_existing=True)
        if row is not None:
            return row
        self.db.add(SyncLockModel(name=LOCK_NAME, version=0))
        try:
            await self.db.commit()
        except IntegrityError:
            # Otro proceso creó la fila primero
            await self.db.rollback()
        return await self.db.get(SyncLockModel, LOCK_NAME, populate_existing=True)

    async def acquire_lock(self, job_id: str, *, lease_seconds: int, now: datetime) -> LockAcquisition:
        """
        Toma el mutex si está libre o si el lease del holder expiró.

        Returns:
            LockAcquisition con stale_job_id si se desalojó un job abandonado
        """
        now = ensure_utc(now)
        row = await self._lock_row()
        holder = row.holder_job_id
        expires = ensure_utc(row.lease_expires_at) if row.lease_expires_at else None

        if holder and expires and expires > now:
            return LockAcquisition(acquired=False, holder_job_id=holder)

        stmt = (
            update(SyncLockModel)
            .where(SyncLockModel.name == LOCK_NAME, SyncLockModel.version == row.version)
            .values(
                holder_job_id=job_id,
                acquired_at=now,
                heartbeat_at=now,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                version=row.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            await self.db.rollback()
            current = await self.current_holder(now)
            return LockAcquisition(acquired=False, holder_job_id=current)

        await self.db.commit()
        if holder:
            logger.warning(f"Lease del job {holder} expirado; mutex tomado por {job_id}")
        return LockAcquisition(acquired=True, stale_job_id=holder)

    async def heartbeat(self, job_id: str, *, lease_seconds: int, now: datetime) -> bool:
        now = ensure_utc(now)
        stmt = (
            update(SyncLockModel)
            .where(SyncLockModel.name == LOCK_NAME, SyncLockModel.holder_job_id == job_id)
            .values(heartbeat_at=now, lease_expires_at=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def release_lock(self, job_id: str) -> None:
        stmt = (
            update(SyncLockModel)
            .where(SyncLockModel.name == LOCK_NAME, SyncLockModel.holder_job_id == job_id)
            .values(
                holder_job_id=None,
                lease_expires_at=None,
                version=SyncLockModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def current_holder(self, now: datetime) -> Optional[str]:
        """Job que mantiene un lease vigente, o None."""
        row = await self.db.get(SyncLockModel, LOCK_NAME, populate_existing=True)
        if row is None or not row.holder_job_id or row.lease_expires_at is None:
            return None
        if ensure_utc(row.lease_expires_at) <= ensure_utc(now):
            return None
        return row.holder_job_id

    # ------------------------------------------------------------------
    # Cursores
    # ------------------------------------------------------------------

    async def get_cursor(self, direction: SyncDirection) -> Optional[datetime]:
        row = await self.db.get(SyncCursorModel, direction.value)
        return ensure_utc(row.cursor_at) if row else None

    async def advance_cursor(self, direction: SyncDirection, value: datetime, now: datetime) -> datetime:
        """Mueve el cursor hacia adelante; nunca retrocede."""
        value = ensure_utc(value)
        row = await self.db.get(SyncCursorModel, direction.value)
        if row is None:
            self.db.add(SyncCursorModel(direction=direction.value, cursor_at=value, updated_at=ensure_utc(now)))
            await self.db.flush()
            return value
        current = ensure_utc(row.cursor_at)
        if value > current:
            row.cursor_at = value
            row.updated_at = ensure_utc(now)
            await self.db.flush()
            return value
        return current

    async def reset_cursor(self, direction: SyncDirection) -> None:
        row = await self.db.get(SyncCursorModel, direction.value)
        if row is not None:
            await self.db.delete(row)
            await self.db.flush()

    # ------------------------------------------------------------------
    # Log de errores (append-only)
    # ------------------------------------------------------------------

    async def log_error(
        self,
        kind: ErrorKind,
        message: str,
        *,
        now: datetime,
        job_id: Optional[str] = None,
        record_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.db.add(
            SyncErrorModel(
                job_id=job_id,
                record_id=record_id,
                error_kind=kind.value,
                message=message[:4000],
                details=details,
                created_at=ensure_utc(now),
            )
        )
        await self.db.flush()

    async def recent_errors(self, limit: int = 10, since: Optional[datetime] = None) -> list[dict[str, Any]]:
        query = select(SyncErrorModel)
        if since is not None:
            query = query.where(SyncErrorModel.created_at >= ensure_utc(since))
        query = query.order_by(SyncErrorModel.created_at.desc(), SyncErrorModel.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return [
            {
                "job_id": e.job_id,
                "record_id": e.record_id,
                "error_kind": e.error_kind,
                "message": e.message,
                "details": e.details,
                "timestamp": ensure_utc(e.created_at).isoformat(),
            }
            for e in result.scalars().all()
        ]

    async def count_errors(self, since: Optional[datetime] = None, job_id: Optional[str] = None) -> int:
        query = select(func.count(SyncErrorModel.id))
        if since is not None:
            query = query.where(SyncErrorModel.created_at >= ensure_utc(since))
        if job_id is not None:
            query = query.where(SyncErrorModel.job_id == job_id)
        result = await self.db.execute(query)
        return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Historial de jobs
    # ------------------------------------------------------------------

    async def save_job(self, job: SyncJob) -> None:
        """Inserta o actualiza (checkpoint) el job."""
        row = await self.db.get(SyncJobModel, job.id)
        if row is None:
            row = SyncJobModel(id=job.id)
            self.db.add(row)
        row.direction = job.direction.value
        row.mode = job.mode.value
        row.force_full = job.force_full
        row.status = job.status.value
        row.started_at = ensure_utc(job.started_at)
        row.finished_at = ensure_utc(job.finished_at) if job.finished_at else None
        row.total_processed = job.stats.total_processed
        row.created = job.stats.created
        row.updated = job.stats.updated
        row.skipped = job.stats.skipped
        row.errors = job.stats.errors
        row.media_synced = job.stats.media_synced
        row.changes_processed = job.changes_processed
        row.degraded = job.degraded
        row.error_kind = job.error_kind.value if job.error_kind else None
        row.error_message = job.error_message
        await self.db.flush()

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        row = await self.db.get(SyncJobModel, job_id)
        return self._to_entity(row) if row else None

    async def mark_job_failed(self, job_id: str, kind: ErrorKind, message: str, now: datetime) -> None:
        row = await self.db.get(SyncJobModel, job_id)
        if row is None or row.status != JobStatus.RUNNING.value:
            return
        row.status = JobStatus.FAILED.value
        row.error_kind = kind.value
        row.error_message = message
        row.finished_at = ensure_utc(now)
        await self.db.flush()

    async def list_jobs(self, limit: int = 50, offset: int = 0) -> tuple[list[SyncJob], int]:
        total = (await self.db.execute(select(func.count(SyncJobModel.id)))).scalar_one()
        query = (
            select(SyncJobModel)
            .order_by(SyncJobModel.started_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return [self._to_entity(r) for r in result.scalars().all()], int(total)

    async def last_finished_job(self) -> Optional[SyncJob]:
        query = (
            select(SyncJobModel)
            .where(SyncJobModel.finished_at.is_not(None))
            .order_by(SyncJobModel.finished_at.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        row = result.scalar_one_or_none()
        return self._to_entity(row) if row else None

    @staticmethod
    def _to_entity(row: SyncJobModel) -> SyncJob:
        return SyncJob(
            id=row.id,
            direction=SyncDirection(row.direction),
            mode=JobMode(row.mode),
            force_full=bool(row.force_full),
            started_at=ensure_utc(row.started_at),
            status=JobStatus(row.status),
            finished_at=ensure_utc(row.finished_at) if row.finished_at else None,
            stats=SyncStats(
                total_processed=row.total_processed,
                created=row.created,
                updated=row.updated,
                skipped=row.skipped,
                errors=row.errors,
                media_synced=row.media_synced,
            ),
            error_kind=ErrorKind(row.error_kind) if row.error_kind else None,
            error_message=row.error_message,
            degraded=bool(row.degraded),
            changes_processed=row.changes_processed,
        )
