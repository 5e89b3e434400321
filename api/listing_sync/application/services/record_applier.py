"""
Aplicación de un registro individual en cualquiera de los dos sentidos.

Lo comparten el orquestador (por batch), el sync de un solo registro y el
ingestor de webhooks, para que todos converjan con las mismas reglas.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from listing_sync.application.services.media_synchronizer import MediaSynchronizer
from listing_sync.application.services.record_mapper import RecordMapper
from listing_sync.domain.entities import ErrorKind, MergeResult, Side
from listing_sync.infrastructure.database.models import ListingModel
from listing_sync.infrastructure.external.airtable_sync.types import (
    AirtableRecord,
    RemoteWrite,
    utc_now,
)
from listing_sync.infrastructure.repositories.listing_repository import ListingRepository
from listing_sync.infrastructure.repositories.sync_ledger_repository import SyncLedgerRepository


@dataclass
class ApplyOutcome:
    """Resultado de aplicar un registro remoto en local."""

    action: str  # created | updated | skipped
    listing: ListingModel
    merge: MergeResult
    changed_fields: list[str] = field(default_factory=list)
    media_synced: int = 0
    media_failed: int = 0


@dataclass
class PreparedWrite:
    """Escritura local -> remoto lista para el cliente (write es None si no hay cambios)."""

    write: Optional[RemoteWrite]
    merge: MergeResult
    media_synced: int = 0


class RecordApplier:
    def __init__(
        self,
        *,
        listings: ListingRepository,
        ledger: SyncLedgerRepository,
        mapper: RecordMapper,
        media: Optional[MediaSynchronizer],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.listings = listings
        self.ledger = ledger
        self.mapper = mapper
        self.media = media
        self._clock = clock

    async def apply_remote(
        self,
        record: AirtableRecord,
        *,
        initiator: Side = Side.REMOTE,
        force_media: bool = False,
        job_id: Optional[str] = None,
    ) -> ApplyOutcome:
        """
        Mezcla un registro Airtable en el listing local (lo crea si no existe).
        Los errores de media se registran en el ledger pero no abortan el registro.
        """
        listing = await self.listings.get_by_remote_id(record.record_id)
        snapshot = ListingRepository.to_local_record(listing) if listing else None
        merge = self.mapper.merge_remote_into_local(snapshot, record, initiator=initiator)
        now = self._clock()

        created = listing is None
        revived = False
        values = dict(merge.values)
        if created:
            listing = await self.listings.create_from_remote(record.record_id, values, record.last_modified, now)
            values = {}
        elif listing.is_deleted:
            # Un cambio remoto posterior revive el listing
            listing.is_deleted = False
            revived = True

        media_synced = 0
        media_failed = 0
        if self.media is not None:
            for name, value in merge.media_fields.items():
                spec = self.mapper.registry.classify(name)
                result = await self.media.sync_remote_field(listing, spec, value, force=force_media)
                media_synced += result.synced
                media_failed += result.failed
                for error in result.errors:
                    await self.ledger.log_error(
                        ErrorKind.MEDIA, error, now=now, job_id=job_id, record_id=record.record_id
                    )
                if not result.failed and result.attachment_ids != (listing.fields or {}).get(name):
                    values[name] = result.attachment_ids

        await self.listings.apply_sync_values(listing, values, record.last_modified, now)

        changed = list(merge.fields_written) if created else list(values.keys())
        if created:
            action = "created"
        elif values or revived:
            action = "updated"
        else:
            action = "skipped"
        return ApplyOutcome(
            action=action,
            listing=listing,
            merge=merge,
            changed_fields=changed,
            media_synced=media_synced,
            media_failed=media_failed,
        )

    async def prepare_remote_write(
        self,
        listing: ListingModel,
        remote: Optional[AirtableRecord],
        *,
        initiator: Side = Side.LOCAL,
        job_id: Optional[str] = None,
    ) -> PreparedWrite:
        """Calcula el payload Airtable de un listing (incluye campos media)."""
        snapshot = ListingRepository.to_local_record(listing)
        merge = self.mapper.merge_local_into_remote(snapshot, remote, initiator=initiator)
        payload = dict(merge.values)

        media_synced = 0
        if self.media is not None:
            for name, value in merge.media_fields.items():
                spec = self.mapper.registry.classify(name)
                remote_value = remote.fields.get(spec.remote_field) if remote else None
                media_payload, result = await self.media.prepare_for_remote(listing, spec, value, remote_value)
                for error in result.errors:
                    await self.ledger.log_error(
                        ErrorKind.MEDIA, error, now=self._clock(), job_id=job_id, record_id=str(listing.id)
                    )
                if media_payload is not None:
                    payload[spec.remote_field] = media_payload
                    merge.fields_written.append(name)
                    media_synced += result.synced

        if not payload:
            return PreparedWrite(write=None, merge=merge)
        logger.debug(f"Listing {listing.id}: {len(payload)} campo(s) hacia Airtable")
        return PreparedWrite(
            write=RemoteWrite(key=str(listing.id), fields=payload, record_id=listing.remote_record_id),
            merge=merge,
            media_synced=media_synced,
        )
