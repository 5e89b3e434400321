"""
Carga/guardado de ConnectionConfig: variables de entorno + override en system_settings.
"""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.core.config import Settings, settings
from listing_sync.infrastructure.external.airtable_sync.connection_config import ConnectionConfig
from listing_sync.infrastructure.repositories.system_settings_repository import (
    CONNECTION_SETTINGS_KEY,
    SystemSettingsRepository,
)


class ConnectionSettingsService:
    def __init__(self, db: AsyncSession, base_settings: Settings = settings):
        self.settings_repo = SystemSettingsRepository(db)
        self._base = base_settings

    async def load(self) -> ConnectionConfig:
        overrides = await self.settings_repo.get_value(CONNECTION_SETTINGS_KEY, default={})
        return ConnectionConfig.from_settings(self._base).with_overrides(overrides)

    async def save(self, values: Dict[str, Any]) -> ConnectionConfig:
        """Combina con el override existente y persiste. No hace commit."""
        current = await self.settings_repo.get_value(CONNECTION_SETTINGS_KEY, default={}) or {}
        merged = {**current, **{k: v for k, v in values.items() if v is not None}}
        await self.settings_repo.set_value(
            CONNECTION_SETTINGS_KEY,
            merged,
            "Override de la conexión Airtable (token, base, tabla y política del cliente).",
        )
        return ConnectionConfig.from_settings(self._base).with_overrides(merged)
