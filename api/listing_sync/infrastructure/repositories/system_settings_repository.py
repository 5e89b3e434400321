"""
Repositorio clave/valor sobre system_settings.

Guarda el override de la conexión Airtable editado desde la API.
"""
from typing import Any, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.infrastructure.database.models import SystemSettingsModel

CONNECTION_SETTINGS_KEY = "airtable_connection"


class SystemSettingsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_value(self, key: str, default: Any = None) -> Any:
        result = await self.db.execute(select(SystemSettingsModel).where(SystemSettingsModel.key == key))
        row = result.scalar_one_or_none()
        return row.value if row else default

    async def set_value(self, key: str, value: Any, description: Optional[str] = None) -> None:
        """Upsert de la clave. No hace commit."""
        row = await self.db.get(SystemSettingsModel, key)
        if row is None:
            self.db.add(SystemSettingsModel(key=key, value=value, description=description))
        else:
            # Columna JSON: reasignar para que SQLAlchemy marque el cambio
            row.value = value
            if description:
                row.description = description
        await self.db.flush()
        # el valor puede contener el token
        logger.info(f"Setting '{key}' guardado")
