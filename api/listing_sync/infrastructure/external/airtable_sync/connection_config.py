"""
Configuración de conexión a Airtable.

Este módulo no realiza I/O: solo define y valida la configuración.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any, Optional

from listing_sync.core.config import Settings


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Credenciales e identidad de la tabla remota, más la política del cliente.

    Un sync nunca arranca si validate() es False.
    """

    token: str
    base_id: str
    table_name: str
    batch_size: int = 50
    request_delay_ms: int = 200
    last_modified_field: str = "Last Modified"
    max_retries: int = 3
    retry_base_delay_s: float = 1.0
    timeout_s: int = 30
    api_url: str = "https://api.airtable.com/v0"

    def missing_fields(self) -> list[str]:
        missing = []
        if not (self.token or "").strip():
            missing.append("token")
        if not (self.base_id or "").strip():
            missing.append("base_id")
        if not (self.table_name or "").strip():
            missing.append("table_name")
        return missing

    def validate(self) -> bool:
        return not self.missing_fields()

    @property
    def request_delay_s(self) -> float:
        return max(self.request_delay_ms, 0) / 1000.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConnectionConfig":
        return cls(
            token=settings.AIRTABLE_TOKEN,
            base_id=settings.AIRTABLE_BASE_ID,
            table_name=settings.AIRTABLE_TABLE_NAME,
            batch_size=settings.SYNC_BATCH_SIZE,
            request_delay_ms=settings.SYNC_REQUEST_DELAY_MS,
            last_modified_field=settings.AIRTABLE_LAST_MOD_FIELD,
            max_retries=settings.SYNC_MAX_RETRIES,
            retry_base_delay_s=settings.SYNC_RETRY_BASE_DELAY_S,
            timeout_s=settings.SYNC_REQUEST_TIMEOUT_S,
            api_url=settings.AIRTABLE_API_URL,
        )

    def with_overrides(self, overrides: Optional[dict[str, Any]]) -> "ConnectionConfig":
        """Aplica valores persistidos (system_settings) ignorando claves desconocidas o vacías."""
        if not overrides:
            return self
        known = set(asdict(self))
        clean = {k: v for k, v in overrides.items() if k in known and v not in (None, "")}
        return replace(self, **clean)

    def to_public_dict(self) -> dict[str, Any]:
        """Representación sin exponer el token completo."""
        data = asdict(self)
        token = data.pop("token") or ""
        data["token"] = f"{token[:4]}...{token[-4:]}" if len(token) > 8 else ("***" if token else "")
        data["is_valid"] = self.validate()
        return data
