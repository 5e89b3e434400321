"""
Repositorio de attachments locales y su mapeo con attachments de Airtable.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.infrastructure.database.models import AttachmentModel, MediaMappingModel
from listing_sync.infrastructure.external.airtable_sync.types import ensure_utc


class MediaRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_attachment(self, attachment_id: int) -> Optional[AttachmentModel]:
        return await self.db.get(AttachmentModel, attachment_id)

    async def list_attachments(self, attachment_ids: Optional[List[int]] = None) -> List[AttachmentModel]:
        query = select(AttachmentModel)
        if attachment_ids is not None:
            if not attachment_ids:
                return []
            query = query.where(AttachmentModel.id.in_(attachment_ids))
        result = await self.db.execute(query.order_by(AttachmentModel.id))
        return list(result.scalars().all())

    async def get_attachment_by_hash(self, listing_id: int, content_hash: str) -> Optional[AttachmentModel]:
        query = (
            select(AttachmentModel)
            .where(AttachmentModel.listing_id == listing_id, AttachmentModel.content_hash == content_hash)
            .order_by(AttachmentModel.id)
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def add_attachment(self, attachment: AttachmentModel) -> AttachmentModel:
        self.db.add(attachment)
        await self.db.flush()
        return attachment

    async def delete_attachment(self, attachment: AttachmentModel) -> None:
        await self.db.execute(delete(MediaMappingModel).where(MediaMappingModel.attachment_id == attachment.id))
        await self.db.delete(attachment)
        await self.db.flush()

    async def get_mapping_by_remote(
        self, listing_id: int, field_name: str, remote_attachment_id: str
    ) -> Optional[MediaMappingModel]:
        query = select(MediaMappingModel).where(
            MediaMappingModel.listing_id == listing_id,
            MediaMappingModel.field_name == field_name,
            MediaMappingModel.remote_attachment_id == remote_attachment_id,
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_mapping_by_attachment(
        self, listing_id: int, field_name: str, attachment_id: int
    ) -> Optional[MediaMappingModel]:
        query = select(MediaMappingModel).where(
            MediaMappingModel.listing_id == listing_id,
            MediaMappingModel.field_name == field_name,
            MediaMappingModel.attachment_id == attachment_id,
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_mapping_by_hash(
        self, listing_id: int, field_name: str, content_hash: str
    ) -> Optional[MediaMappingModel]:
        query = select(MediaMappingModel).where(
            MediaMappingModel.listing_id == listing_id,
            MediaMappingModel.field_name == field_name,
            MediaMappingModel.content_hash == content_hash,
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def save_mapping(
        self,
        *,
        listing_id: int,
        field_name: str,
        attachment_id: int,
        remote_attachment_id: Optional[str],
        remote_fingerprint: Optional[str],
        content_hash: Optional[str],
        source: str,
        now: datetime,
    ) -> MediaMappingModel:
        mapping = await self.get_mapping_by_attachment(listing_id, field_name, attachment_id)
        if mapping is None:
            mapping = MediaMappingModel(listing_id=listing_id, field_name=field_name, attachment_id=attachment_id)
            self.db.add(mapping)
        mapping.remote_attachment_id = remote_attachment_id
        mapping.remote_fingerprint = remote_fingerprint
        mapping.content_hash = content_hash
        mapping.source = source
        mapping.synced_at = ensure_utc(now)
        await self.db.flush()
        return mapping

    async def count_mapped_files(self) -> int:
        result = await self.db.execute(select(func.count(func.distinct(MediaMappingModel.attachment_id))))
        return int(result.scalar_one())

    async def total_mapped_size(self) -> int:
        mapped_ids = select(MediaMappingModel.attachment_id).distinct()
        query = select(func.coalesce(func.sum(AttachmentModel.size_bytes), 0)).where(AttachmentModel.id.in_(mapped_ids))
        result = await self.db.execute(query)
        return int(result.scalar_one())
