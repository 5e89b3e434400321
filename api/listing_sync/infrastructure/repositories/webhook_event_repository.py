"""
Repositorio de eventos de webhook recibidos.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.infrastructure.database.models import WebhookEventModel
from listing_sync.infrastructure.external.airtable_sync.types import ensure_utc


class WebhookEventRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_key(self, idempotency_key: str) -> Optional[WebhookEventModel]:
        query = select(WebhookEventModel).where(WebhookEventModel.idempotency_key == idempotency_key)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def add(
        self,
        *,
        idempotency_key: str,
        event_type: str,
        record_id: str,
        remote_last_modified: datetime,
        payload: Dict[str, Any],
        now: datetime,
    ) -> WebhookEventModel:
        """Registra el evento sin procesar. Lanza IntegrityError si la clave ya existe."""
        event = WebhookEventModel(
            idempotency_key=idempotency_key,
            event_type=event_type,
            record_id=record_id,
            remote_last_modified=ensure_utc(remote_last_modified),
            payload=payload,
            received_at=ensure_utc(now),
            processed=False,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def mark_processed(self, event: WebhookEventModel, now: datetime) -> None:
        event.processed = True
        event.processed_at = ensure_utc(now)
        await self.db.flush()
