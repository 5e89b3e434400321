"""
Repositorio del mapeo de campos persistido.
"""
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.domain.entities import DataType, FieldCategory, FieldSpec, MediaType
from listing_sync.infrastructure.database.models import FieldSpecModel
from listing_sync.infrastructure.external.airtable_sync.field_registry import (
    FieldRegistry,
    default_registry,
)


class FieldSpecRepository:
    """
    Si la tabla field_specs está vacía se usa el mapeo por defecto de listings.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_specs(self) -> List[FieldSpec]:
        result = await self.db.execute(select(FieldSpecModel).order_by(FieldSpecModel.name))
        return [self._to_entity(row) for row in result.scalars().all()]

    async def load_registry(self) -> FieldRegistry:
        specs = await self.list_specs()
        if not specs:
            return default_registry()
        return FieldRegistry(specs)

    async def replace_all(self, specs: List[FieldSpec]) -> int:
        await self.db.execute(delete(FieldSpecModel))
        for spec in specs:
            self.db.add(
                FieldSpecModel(
                    name=spec.name,
                    remote_field=spec.remote_field,
                    category=spec.category.value,
                    data_type=spec.data_type.value,
                    allowed_values=list(spec.allowed_values) or None,
                    media_type=spec.media_type.value if spec.media_type else None,
                    max_files=spec.max_files,
                )
            )
        await self.db.flush()
        return len(specs)

    @staticmethod
    def _to_entity(row: FieldSpecModel) -> FieldSpec:
        return FieldSpec(
            name=row.name,
            remote_field=row.remote_field,
            category=FieldCategory(row.category),
            data_type=DataType(row.data_type),
            allowed_values=tuple(row.allowed_values or ()),
            media_type=MediaType(row.media_type) if row.media_type else None,
            max_files=row.max_files,
        )
