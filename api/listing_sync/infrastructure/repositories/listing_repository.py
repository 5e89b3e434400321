"""
Repositorio del store local de listings.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.domain.entities import LocalRecord
from listing_sync.infrastructure.database.models import ListingModel
from listing_sync.infrastructure.external.airtable_sync.types import (
    ensure_utc,
    parse_airtable_datetime,
)


class ListingRepository:
    """
    Acceso a la tabla listings.

    Dos tipos de escritura:
    - edición local (create_local / update_local_fields): mueve modified_at
      y el timestamp de cada campo tocado.
    - aplicación de sync (create_from_remote / apply_sync_values): fija el
      timestamp de campo al del cambio remoto y NO toca modified_at.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, listing_id: int) -> Optional[ListingModel]:
        return await self.db.get(ListingModel, listing_id)

    async def get_by_remote_id(self, remote_record_id: str) -> Optional[ListingModel]:
        query = select(ListingModel).where(ListingModel.remote_record_id == remote_record_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    def _syncable(self, cursor: Optional[datetime]):
        query = select(ListingModel).where(
            ListingModel.sync_enabled.is_(True),
            ListingModel.is_deleted.is_(False),
        )
        if cursor is not None:
            query = query.where(ListingModel.modified_at > ensure_utc(cursor))
        return query

    async def list_modified_since(self, cursor: Optional[datetime]) -> List[ListingModel]:
        """Listings sincronizables con modified_at > cursor (todos si cursor es None)."""
        query = self._syncable(cursor).order_by(ListingModel.modified_at, ListingModel.id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_modified_since(self, cursor: Optional[datetime]) -> int:
        query = select(func.count()).select_from(self._syncable(cursor).subquery())
        result = await self.db.execute(query)
        return int(result.scalar_one())

    async def create_local(self, fields: Dict[str, Any], now: datetime, title: Optional[str] = None) -> ListingModel:
        stamp = ensure_utc(now).isoformat()
        listing = ListingModel(
            title=title,
            fields=dict(fields),
            field_modified_at={name: stamp for name in fields},
            modified_at=ensure_utc(now),
            sync_enabled=True,
            is_deleted=False,
        )
        self.db.add(listing)
        await self.db.flush()
        return listing

    async def update_local_fields(self, listing: ListingModel, values: Dict[str, Any], now: datetime) -> None:
        stamp = ensure_utc(now).isoformat()
        # Columnas JSON: se reasigna el dict para que SQLAlchemy detecte el cambio
        listing.fields = {**(listing.fields or {}), **values}
        listing.field_modified_at = {**(listing.field_modified_at or {}), **{k: stamp for k in values}}
        listing.modified_at = ensure_utc(now)
        await self.db.flush()

    async def create_from_remote(
        self,
        remote_record_id: str,
        values: Dict[str, Any],
        remote_modified_at: datetime,
        now: datetime,
    ) -> ListingModel:
        stamp = ensure_utc(remote_modified_at).isoformat()
        listing = ListingModel(
            title=str(values.get("street_address") or values.get("mls_number") or remote_record_id),
            fields=dict(values),
            field_modified_at={name: stamp for name in values},
            remote_record_id=remote_record_id,
            remote_last_modified=ensure_utc(remote_modified_at),
            modified_at=ensure_utc(remote_modified_at),
            last_synced_at=ensure_utc(now),
            sync_enabled=True,
            is_deleted=False,
        )
        self.db.add(listing)
        await self.db.flush()
        return listing

    async def apply_sync_values(
        self,
        listing: ListingModel,
        values: Dict[str, Any],
        remote_modified_at: Optional[datetime],
        now: datetime,
    ) -> None:
        if values:
            stamp = ensure_utc(remote_modified_at or now).isoformat()
            listing.fields = {**(listing.fields or {}), **values}
            listing.field_modified_at = {**(listing.field_modified_at or {}), **{k: stamp for k in values}}
        if remote_modified_at is not None:
            listing.remote_last_modified = ensure_utc(remote_modified_at)
        listing.last_synced_at = ensure_utc(now)
        await self.db.flush()

    async def link_remote(self, listing: ListingModel, remote_record_id: str, now: datetime) -> None:
        listing.remote_record_id = remote_record_id
        listing.last_synced_at = ensure_utc(now)
        await self.db.flush()

    async def mark_synced(self, listing: ListingModel, now: datetime) -> None:
        listing.last_synced_at = ensure_utc(now)
        await self.db.flush()

    async def soft_delete(self, listing: ListingModel, now: datetime) -> None:
        listing.is_deleted = True
        listing.last_synced_at = ensure_utc(now)
        await self.db.flush()

    async def list_all(self, include_deleted: bool = True) -> List[ListingModel]:
        query = select(ListingModel)
        if not include_deleted:
            query = query.where(ListingModel.is_deleted.is_(False))
        result = await self.db.execute(query.order_by(ListingModel.id))
        return list(result.scalars().all())

    @staticmethod
    def to_local_record(listing: ListingModel) -> LocalRecord:
        modified_at = ensure_utc(listing.modified_at)
        stamps = {}
        for name, raw in (listing.field_modified_at or {}).items():
            parsed = parse_airtable_datetime(raw)
            if parsed is not None:
                stamps[name] = parsed
        return LocalRecord(
            listing_id=listing.id,
            remote_record_id=listing.remote_record_id,
            fields=dict(listing.fields or {}),
            field_modified_at=stamps,
            modified_at=modified_at,
        )
