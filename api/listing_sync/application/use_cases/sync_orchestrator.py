"""
Orquestador de jobs de sincronización Airtable <-> local.

Flujo de un job:
    1. Cargar ConnectionConfig (env + override); si es inválida el job
       termina Failed(config_invalid) sin tocar el mutex.
    2. Tomar el mutex (lease). Si hay otro job vivo -> SyncAlreadyInProgress.
    3. Por cada pasada (local->remoto, remoto->local): detectar cambios desde
       el cursor, procesar en batches, checkpoint + heartbeat por batch.
    4. Avanzar cursores solo si la pasada no tuvo errores de registro y
       su ventana empieza en (o antes de) el cursor guardado.
    5. Liberar el mutex, salvo que otro job lo haya tomado (lease perdido):
       ese job termina Failed(stale_job) sin seguir escribiendo.

Un error de registro nunca aborta el job; solo la pérdida total de
conectividad (o un fallo interno) lo marca Failed.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.application.services.change_detector import ChangeDetector
from listing_sync.application.services.connection_settings import ConnectionSettingsService
from listing_sync.application.services.media_synchronizer import MediaStorage, MediaSynchronizer
from listing_sync.application.services.record_applier import RecordApplier
from listing_sync.application.services.record_mapper import RecordMapper
from listing_sync.core.config import settings
from listing_sync.domain.entities import (
    ChangeRecord,
    ErrorKind,
    JobMode,
    Side,
    SyncDirection,
    SyncJob,
)
from listing_sync.infrastructure.external.airtable_sync.airtable_client import (
    AirtableApiError,
    AirtableClient,
)
from listing_sync.infrastructure.external.airtable_sync.connection_config import ConnectionConfig
from listing_sync.infrastructure.external.airtable_sync.field_registry import FieldRegistry
from listing_sync.infrastructure.external.airtable_sync.types import (
    AirtableRecord,
    BatchItemStatus,
    ensure_utc,
    utc_now,
)
from listing_sync.infrastructure.repositories.field_spec_repository import FieldSpecRepository
from listing_sync.infrastructure.repositories.listing_repository import ListingRepository
from listing_sync.infrastructure.repositories.sync_ledger_repository import SyncLedgerRepository
from listing_sync.shared.exceptions.sync import (
    ConfigInvalidException,
    RecordNotFoundException,
    SyncAlreadyInProgressException,
)

ClientFactory = Callable[[ConnectionConfig], AirtableClient]

DEFAULT_DELTA_WINDOW_SECONDS = 3600


class _ConnectivityLost(Exception):
    pass


class _LeaseLost(Exception):
    pass


@dataclass
class SyncContext:
    """Colaboradores construidos para una ConnectionConfig concreta."""

    config: ConnectionConfig
    client: AirtableClient
    registry: FieldRegistry
    mapper: RecordMapper
    media: Optional[MediaSynchronizer]
    detector: ChangeDetector
    applier: RecordApplier
    remote_reached: bool = False


@dataclass
class SingleRecordResult:
    record_id: str
    direction: SyncDirection
    status: str  # applied | conflict | skipped | error
    changed_fields: list[str]
    conflicts_resolved: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "direction": self.direction.value,
            "status": self.status,
            "changed_fields": self.changed_fields,
            "conflicts_resolved": self.conflicts_resolved,
            "message": self.message,
        }


class SyncOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        *,
        client_factory: ClientFactory = AirtableClient,
        storage: Optional[MediaStorage] = None,
        clock: Callable[[], datetime] = utc_now,
        lease_seconds: int = settings.SYNC_LOCK_LEASE_SECONDS,
        max_consecutive_failures: int = settings.SYNC_MAX_CONSECUTIVE_FAILURES,
        media_enabled: bool = settings.SYNC_MEDIA_ENABLED,
    ):
        self.db = db
        self.ledger = SyncLedgerRepository(db)
        self.listings = ListingRepository(db)
        self.field_specs = FieldSpecRepository(db)
        self.connection = ConnectionSettingsService(db)
        self._client_factory = client_factory
        self._storage = storage or MediaStorage(settings.MEDIA_ROOT, settings.MEDIA_PUBLIC_BASE_URL)
        self._clock = clock
        self._lease_seconds = lease_seconds
        self._max_consecutive_failures = max(1, max_consecutive_failures)
        self._media_enabled = media_enabled

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Comandos
    # ------------------------------------------------------------------

    async def run_full_sync(
        self, direction: SyncDirection = SyncDirection.BOTH, force_full: bool = False
    ) -> SyncJob:
        """
        Sync completo. Con force_full los cursores se reinician y los
        attachments se re-transfieren aunque su fingerprint no cambie.
        """
        job = SyncJob(direction=direction, mode=JobMode.FULL, started_at=self._clock(), force_full=force_full)
        return await self._run_job(job)

    async def run_delta_sync(
        self, since: Optional[datetime] = None, direction: SyncDirection = SyncDirection.BOTH
    ) -> SyncJob:
        """Sync de cambios desde `since` (por defecto, la última hora)."""
        now = self._clock()
        since = ensure_utc(since) if since else now - timedelta(seconds=DEFAULT_DELTA_WINDOW_SECONDS)
        job = SyncJob(direction=direction, mode=JobMode.DELTA, started_at=now, since=since)
        return await self._run_job(job)

    async def build_context(
        self, config: Optional[ConnectionConfig] = None, *, with_media: Optional[bool] = None
    ) -> SyncContext:
        config = config or await self.connection.load()
        client = self._client_factory(config)
        registry = await self.field_specs.load_registry()
        mapper = RecordMapper(registry, ignored_remote_fields=(config.last_modified_field,))
        media = None
        media_on = self._media_enabled if with_media is None else with_media
        if media_on:
            media = MediaSynchronizer(
                self.db,
                client,
                self._storage,
                registry,
                max_file_size=settings.MEDIA_MAX_FILE_SIZE,
                clock=self._clock,
            )
        applier = RecordApplier(
            listings=self.listings, ledger=self.ledger, mapper=mapper, media=media, clock=self._clock
        )
        return SyncContext(
            config=config,
            client=client,
            registry=registry,
            mapper=mapper,
            media=media,
            detector=ChangeDetector(self.listings, client),
            applier=applier,
        )

    # ------------------------------------------------------------------
    # Ciclo de vida del job
    # ------------------------------------------------------------------

    async def _run_job(self, job: SyncJob) -> SyncJob:
        config = await self.connection.load()
        if not config.validate():
            message = f"Configuración incompleta: {', '.join(config.missing_fields())}"
            job.fail(ErrorKind.CONFIG_INVALID, message, self._clock())
            await self.ledger.save_job(job)
            await self.ledger.log_error(ErrorKind.CONFIG_INVALID, message, now=self._clock(), job_id=job.id)
            await self.db.commit()
            logger.error(f"Job {job.id} no iniciado: {message}")
            return job

        lock = await self.ledger.acquire_lock(job.id, lease_seconds=self._lease_seconds, now=self._clock())
        if not lock.acquired:
            raise SyncAlreadyInProgressException(lock.holder_job_id)
        if lock.stale_job_id:
            await self.ledger.mark_job_failed(
                lock.stale_job_id, ErrorKind.STALE_JOB, "Lease expirado sin heartbeat", self._clock()
            )

        await self.ledger.save_job(job)
        await self.db.commit()
        logger.info(
            f"Job {job.id} iniciado: mode={job.mode.value} direction={job.direction.value} "
            f"force_full={job.force_full}"
        )

        try:
            ctx = await self.build_context(config)
            if job.force_full:
                for direction in job.direction.passes():
                    await self.ledger.reset_cursor(direction)
            for direction in job.direction.passes():
                await self._run_pass(ctx, job, direction)
            job.complete(self._clock())
            logger.success(f"Job {job.id} completado: {job.stats.to_dict()}")
        except _ConnectivityLost as e:
            job.fail(ErrorKind.CONNECTIVITY, str(e), self._clock())
            await self.ledger.log_error(ErrorKind.CONNECTIVITY, str(e), now=self._clock(), job_id=job.id)
            logger.error(f"Job {job.id} fallido por conectividad: {e}")
        except _LeaseLost as e:
            # El mutex ya es de otro job: se descarta el batch en curso y no se libera
            await self.db.rollback()
            job.fail(ErrorKind.STALE_JOB, str(e), self._clock())
            await self.ledger.save_job(job)
            await self.ledger.log_error(ErrorKind.STALE_JOB, str(e), now=self._clock(), job_id=job.id)
            await self.db.commit()
            logger.error(f"Job {job.id} detenido: {e}")
            return job
        except Exception as e:
            await self.db.rollback()
            job.fail(ErrorKind.INTERNAL, str(e)[:2000], self._clock())
            logger.exception(f"Job {job.id} fallido por error interno")
            await self._finish(job)
            raise
        await self._finish(job)
        return job

    async def _finish(self, job: SyncJob) -> None:
        await self.ledger.save_job(job)
        await self.ledger.release_lock(job.id)

    async def _checkpoint(self, job: SyncJob) -> None:
        still_holder = await self.ledger.heartbeat(job.id, lease_seconds=self._lease_seconds, now=self._clock())
        if not still_holder:
            raise _LeaseLost("Lease del mutex perdido: otro job tomó el control")
        await self.ledger.save_job(job)
        await self.db.commit()

    # ------------------------------------------------------------------
    # Pasadas
    # ------------------------------------------------------------------

    async def _pass_cursor(self, job: SyncJob, direction: SyncDirection) -> Optional[datetime]:
        if job.since is not None:
            return job.since
        if job.force_full:
            return None
        return await self.ledger.get_cursor(direction)

    async def _run_pass(self, ctx: SyncContext, job: SyncJob, direction: SyncDirection) -> None:
        pass_started = self._clock()
        cursor = await self._pass_cursor(job, direction)
        try:
            changeset = await ctx.detector.changes_since(cursor, direction.source)
        except AirtableApiError as e:
            raise _ConnectivityLost(f"No se pudo enumerar Airtable: {e}") from e
        if direction.source is Side.REMOTE:
            ctx.remote_reached = True

        job.degraded = job.degraded or changeset.degraded
        job.changes_processed += len(changeset)
        errors_before = job.stats.errors
        logger.info(f"Pasada {direction.value}: {len(changeset)} cambio(s) desde {cursor}")

        consecutive_failures = 0
        batch_size = max(1, ctx.config.batch_size)
        for start in range(0, len(changeset.changes), batch_size):
            batch = changeset.changes[start : start + batch_size]
            if direction is SyncDirection.LOCAL_TO_REMOTE:
                reached = await self._push_batch(ctx, job, batch)
            else:
                reached = await self._pull_batch(ctx, job, batch)

            consecutive_failures = 0 if reached else consecutive_failures + 1
            if not reached and not ctx.remote_reached:
                raise _ConnectivityLost("Airtable no respondió en la primera llamada del job")
            if consecutive_failures >= self._max_consecutive_failures:
                raise _ConnectivityLost(f"{consecutive_failures} batches consecutivos sin conectividad")
            await self._checkpoint(job)

        if job.stats.errors != errors_before:
            logger.warning(f"Pasada {direction.value} con errores; cursor sin avanzar")
            return
        if not await self._window_covers_cursor(job, direction):
            logger.info(f"Pasada {direction.value}: la ventana desde {job.since} no cubre el cursor; se mantiene")
            return
        if direction is SyncDirection.LOCAL_TO_REMOTE:
            new_cursor = pass_started
        else:
            new_cursor = changeset.max_changed_at
        if new_cursor is not None:
            await self.ledger.advance_cursor(direction, new_cursor, self._clock())
        await self.db.commit()

    async def _window_covers_cursor(self, job: SyncJob, direction: SyncDirection) -> bool:
        """Un delta con `since` posterior al cursor deja un hueco sin revisar."""
        if job.since is None:
            return True
        stored = await self.ledger.get_cursor(direction)
        return stored is not None and job.since <= stored

    async def _push_batch(self, ctx: SyncContext, job: SyncJob, batch: list[ChangeRecord]) -> bool:
        """
        local -> remoto. Returns False si el batch no llegó a Airtable por
        conectividad (cuenta para el umbral de fallos consecutivos).
        """
        listings = {str(change.payload.id): change.payload for change in batch}
        linked = [l.remote_record_id for l in listings.values() if l.remote_record_id]

        remote_by_id: dict[str, AirtableRecord] = {}
        if linked:
            try:
                remote_by_id = await asyncio.to_thread(ctx.client.get_records_by_ids, linked)
                ctx.remote_reached = True
            except AirtableApiError as e:
                kind = ErrorKind.CONNECTIVITY if e.retriable else ErrorKind.RECORD
                for key in listings:
                    job.stats.total_processed += 1
                    await self._record_error(job, kind, key, f"Lectura remota fallida: {e}")
                return not e.retriable

        writes = []
        media_by_key: dict[str, int] = {}
        for key, listing in listings.items():
            job.stats.total_processed += 1
            try:
                remote = None
                if listing.remote_record_id:
                    remote = remote_by_id.get(listing.remote_record_id)
                    if remote is None:
                        await self._record_error(
                            job, ErrorKind.RECORD, key, f"Registro {listing.remote_record_id} no existe en Airtable"
                        )
                        continue
                async with self.db.begin_nested():
                    prepared = await ctx.applier.prepare_remote_write(
                        listing, remote, initiator=Side.LOCAL, job_id=job.id
                    )
                    if prepared.write is None:
                        await self.listings.mark_synced(listing, self._clock())
                if prepared.write is None:
                    job.stats.skipped += 1
                    continue
                writes.append(prepared.write)
                media_by_key[key] = prepared.media_synced
            except Exception as e:
                logger.warning(f"Listing {key}: error preparando escritura: {e}")
                await self._record_error(job, ErrorKind.RECORD, key, str(e))

        if not writes:
            return True

        outcome = await asyncio.to_thread(ctx.client.upsert_records, writes)
        now = self._clock()
        for item in outcome.items:
            listing = listings[item.key]
            if item.status is BatchItemStatus.APPLIED:
                ctx.remote_reached = True
                if item.created:
                    job.stats.created += 1
                    await self.listings.link_remote(listing, item.record_id, now)
                else:
                    job.stats.updated += 1
                    await self.listings.mark_synced(listing, now)
                job.stats.media_synced += media_by_key.get(item.key, 0)
            elif item.status is BatchItemStatus.SKIPPED:
                job.stats.skipped += 1
            else:
                kind = ErrorKind.CONNECTIVITY if item.retriable else ErrorKind.RECORD
                await self._record_error(job, kind, item.key, item.message)
        return not outcome.connectivity_failed

    async def _pull_batch(self, ctx: SyncContext, job: SyncJob, batch: list[ChangeRecord]) -> bool:
        """remoto -> local. Los registros ya vienen en el ChangeSet."""
        for change in batch:
            record: AirtableRecord = change.payload
            job.stats.total_processed += 1
            try:
                # Savepoint por registro: un fallo no deja escrituras a medias en la sesión
                async with self.db.begin_nested():
                    outcome = await ctx.applier.apply_remote(
                        record, initiator=Side.REMOTE, force_media=job.force_full, job_id=job.id
                    )
            except Exception as e:
                logger.warning(f"Registro {record.record_id}: error aplicando en local: {e}")
                await self._record_error(job, ErrorKind.RECORD, record.record_id, str(e))
                continue

            if outcome.action == "created":
                job.stats.created += 1
            elif outcome.action == "updated":
                job.stats.updated += 1
            else:
                job.stats.skipped += 1
            job.stats.media_synced += outcome.media_synced
        return True

    async def _record_error(self, job: SyncJob, kind: ErrorKind, record_id: str, message: str) -> None:
        job.stats.errors += 1
        await self.ledger.log_error(kind, message, now=self._clock(), job_id=job.id, record_id=record_id)

    # ------------------------------------------------------------------
    # Registro individual
    # ------------------------------------------------------------------

    async def sync_single_record(
        self, record_id: str, direction: SyncDirection = SyncDirection.REMOTE_TO_LOCAL
    ) -> SingleRecordResult:
        """
        Sincroniza un único registro fuera del ciclo de jobs (no toma el mutex).

        record_id acepta el id local (numérico) o el record id de Airtable.

        Raises:
            ConfigInvalidException: si falta configuración de conexión
            RecordNotFoundException: si el registro no existe en el lado origen
        """
        config = await self.connection.load()
        if not config.validate():
            raise ConfigInvalidException(config.missing_fields())
        ctx = await self.build_context(config)

        results = []
        for step in direction.passes():
            if step is SyncDirection.LOCAL_TO_REMOTE:
                results.append(await self._push_single(ctx, record_id))
            else:
                results.append(await self._pull_single(ctx, record_id))
        await self.db.commit()

        if len(results) == 1:
            return results[0]
        return self._combine(record_id, direction, results)

    async def _find_listing(self, record_id: str):
        if record_id.isdigit():
            return await self.listings.get(int(record_id))
        return await self.listings.get_by_remote_id(record_id)

    async def _pull_single(self, ctx: SyncContext, record_id: str) -> SingleRecordResult:
        direction = SyncDirection.REMOTE_TO_LOCAL
        remote_id = record_id
        if record_id.isdigit():
            listing = await self.listings.get(int(record_id))
            if listing is None or not listing.remote_record_id:
                raise RecordNotFoundException(record_id, Side.REMOTE.value)
            remote_id = listing.remote_record_id

        result = await asyncio.to_thread(ctx.client.get_record, remote_id)
        if not result.success:
            if result.status_code == 404:
                raise RecordNotFoundException(remote_id, Side.REMOTE.value)
            return SingleRecordResult(record_id, direction, "error", [], message=result.message)

        try:
            async with self.db.begin_nested():
                outcome = await ctx.applier.apply_remote(result.data, initiator=Side.REMOTE)
        except Exception as e:
            await self.ledger.log_error(ErrorKind.RECORD, str(e), now=self._clock(), record_id=remote_id)
            return SingleRecordResult(record_id, direction, "error", [], message=str(e))

        conflicts = outcome.merge.conflicts_resolved
        status = "applied" if outcome.changed_fields or outcome.action == "created" else "skipped"
        if status == "skipped" and conflicts:
            status = "conflict"
        return SingleRecordResult(record_id, direction, status, outcome.changed_fields, conflicts)

    async def _push_single(self, ctx: SyncContext, record_id: str) -> SingleRecordResult:
        direction = SyncDirection.LOCAL_TO_REMOTE
        listing = await self._find_listing(record_id)
        if listing is None or listing.is_deleted:
            raise RecordNotFoundException(record_id, Side.LOCAL.value)

        remote = None
        if listing.remote_record_id:
            fetched = await asyncio.to_thread(ctx.client.get_record, listing.remote_record_id)
            if not fetched.success:
                return SingleRecordResult(record_id, direction, "error", [], message=fetched.message)
            remote = fetched.data

        prepared = await ctx.applier.prepare_remote_write(listing, remote, initiator=Side.LOCAL)
        conflicts = prepared.merge.conflicts_resolved
        if prepared.write is None:
            status = "conflict" if conflicts else "skipped"
            return SingleRecordResult(record_id, direction, status, [], conflicts)

        outcome = await asyncio.to_thread(ctx.client.upsert_records, [prepared.write])
        item = outcome.items[0]
        if item.status is BatchItemStatus.ERRORED:
            kind = ErrorKind.CONNECTIVITY if item.retriable else ErrorKind.RECORD
            await self.ledger.log_error(kind, item.message, now=self._clock(), record_id=str(listing.id))
            return SingleRecordResult(record_id, direction, "error", [], conflicts, item.message)

        now = self._clock()
        if item.created:
            await self.listings.link_remote(listing, item.record_id, now)
        else:
            await self.listings.mark_synced(listing, now)
        return SingleRecordResult(record_id, direction, "applied", list(prepared.merge.fields_written), conflicts)

    @staticmethod
    def _combine(
        record_id: str, direction: SyncDirection, results: list[SingleRecordResult]
    ) -> SingleRecordResult:
        statuses = [r.status for r in results]
        if "error" in statuses:
            status = "error"
        elif "applied" in statuses:
            status = "applied"
        elif "conflict" in statuses:
            status = "conflict"
        else:
            status = "skipped"
        fields = list(dict.fromkeys(f for r in results for f in r.changed_fields))
        return SingleRecordResult(
            record_id,
            direction,
            status,
            fields,
            sum(r.conflicts_resolved for r in results),
            "; ".join(r.message for r in results if r.message),
        )
