"""
Detección de registros modificados desde un cursor, en cualquiera de los lados.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from loguru import logger

from listing_sync.domain.entities import ChangeRecord, ChangeSet, Side
from listing_sync.infrastructure.external.airtable_sync.airtable_client import (
    AirtableApiError,
    AirtableClient,
)
from listing_sync.infrastructure.external.airtable_sync.types import ensure_utc, parse_airtable_datetime
from listing_sync.infrastructure.repositories.listing_repository import ListingRepository

# Airtable responde 422 INVALID_FILTER_BY_FORMULA (o 400) cuando no acepta el filtro
_FILTER_REJECTED_STATUS = (400, 422)


class ChangeDetector:
    """
    Local: listings con modified_at > cursor.
    Remoto: filterByFormula sobre el campo last-modified; si Airtable rechaza
    el filtro, enumera la tabla completa, filtra en cliente y marca degraded.
    """

    def __init__(self, listing_repo: ListingRepository, client: Optional[AirtableClient]) -> None:
        self._listings = listing_repo
        self._client = client

    async def changes_since(self, cursor: Optional[datetime], side: Side) -> ChangeSet:
        """
        Args:
            cursor: límite inferior; None trae todos los registros
            side: lado a inspeccionar

        Raises:
            AirtableApiError: si el remoto no responde (tras reintentos)
        """
        if side is Side.LOCAL:
            return await self._local_changes(cursor)
        return await self._remote_changes(cursor)

    async def pending_local_count(self, cursor: Optional[datetime]) -> int:
        return await self._listings.count_modified_since(cursor)

    async def _local_changes(self, cursor: Optional[datetime]) -> ChangeSet:
        listings = await self._listings.list_modified_since(cursor)
        changes = []
        for listing in listings:
            changed_fields = tuple(
                name
                for name, raw in (listing.field_modified_at or {}).items()
                if cursor is None or (parse_airtable_datetime(raw) or cursor) > ensure_utc(cursor)
            )
            changes.append(
                ChangeRecord(
                    record_id=str(listing.id),
                    source=Side.LOCAL,
                    changed_fields=changed_fields or tuple((listing.fields or {}).keys()),
                    changed_at=ensure_utc(listing.modified_at),
                    payload=listing,
                )
            )
        return ChangeSet(changes=changes)

    async def _remote_changes(self, cursor: Optional[datetime]) -> ChangeSet:
        if self._client is None:
            raise AirtableApiError("Cliente Airtable no configurado", retriable=False)
        client = self._client

        if cursor is None:
            records = await asyncio.to_thread(lambda: list(client.list_records()))
            return ChangeSet(changes=[self._remote_change(r) for r in records])

        cursor = ensure_utc(cursor)
        try:
            records = await asyncio.to_thread(lambda: list(client.iter_records_modified_since(cursor)))
            return ChangeSet(changes=[self._remote_change(r) for r in records])
        except AirtableApiError as e:
            if e.status_code not in _FILTER_REJECTED_STATUS:
                raise
            logger.warning(f"Airtable rechazó el filtro incremental ({e.status_code}); enumerando tabla completa")

        records = await asyncio.to_thread(lambda: list(client.list_records()))
        changes = [self._remote_change(r) for r in records if r.last_modified >= cursor]
        return ChangeSet(changes=changes, degraded=True)

    @staticmethod
    def _remote_change(record) -> ChangeRecord:
        return ChangeRecord(
            record_id=record.record_id,
            source=Side.REMOTE,
            changed_fields=tuple(record.fields.keys()),
            changed_at=record.last_modified,
            payload=record,
        )
