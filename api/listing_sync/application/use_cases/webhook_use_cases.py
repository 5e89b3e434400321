"""
Casos de uso para webhooks entrantes de Airtable.

- created/updated se aplican con el mismo RecordMapper (remoto -> local, initiator remoto).
- deleted hace soft delete del listing; el media nunca se borra.
- Idempotente sobre (record_id, last_modified): un duplicado ya procesado es no-op.
"""
import asyncio
import hashlib
import hmac
from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.application.dto.sync_dto import WebhookPayloadDTO, WebhookResultDTO
from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.core.config import settings
from listing_sync.domain.entities import ErrorKind, Side
from listing_sync.infrastructure.external.airtable_sync.types import (
    AirtableRecord,
    ensure_utc,
    isoformat_z,
    utc_now,
)
from listing_sync.infrastructure.repositories.listing_repository import ListingRepository
from listing_sync.infrastructure.repositories.sync_ledger_repository import SyncLedgerRepository
from listing_sync.infrastructure.repositories.webhook_event_repository import WebhookEventRepository
from listing_sync.shared.exceptions.sync import (
    WebhookProcessingException,
    WebhookSignatureException,
    WebhookValidationException,
)

SIGNATURE_HEADER = "X-Airtable-Signature"


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def idempotency_key(record_id: str, last_modified: datetime) -> str:
    return f"{record_id}:{isoformat_z(ensure_utc(last_modified))}"


class WebhookUseCases:
    def __init__(
        self,
        db: AsyncSession,
        *,
        orchestrator: Optional[SyncOrchestrator] = None,
        secret: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.events = WebhookEventRepository(db)
        self.listings = ListingRepository(db)
        self.ledger = SyncLedgerRepository(db)
        self.orchestrator = orchestrator or SyncOrchestrator(db, clock=clock)
        self._secret = settings.AIRTABLE_WEBHOOK_SECRET if secret is None else secret
        self._clock = clock

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """Sin secreto configurado no se exige firma."""
        if not self._secret:
            return
        if not signature:
            raise WebhookSignatureException()
        provided = signature.removeprefix("sha256=").strip()
        if not hmac.compare_digest(provided, compute_signature(body, self._secret)):
            raise WebhookSignatureException()

    async def process_webhook(self, raw: Any) -> WebhookResultDTO:
        """
        Valida y aplica un webhook.

        Raises:
            WebhookValidationException: payload mal formado (el ledger no se toca)
            WebhookProcessingException: fallo aplicando el cambio (el emisor debe reintentar)
        """
        try:
            payload = WebhookPayloadDTO.model_validate(raw)
        except ValidationError as e:
            errors = [{"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in e.errors()]
            logger.warning(f"Webhook rechazado: {errors}")
            raise WebhookValidationException("Payload de webhook inválido", errors=errors) from e

        key = idempotency_key(payload.record_id, payload.last_modified)
        event = await self.events.get_by_key(key)
        if event is not None and event.processed:
            logger.info(f"Webhook duplicado ignorado: {key}")
            return WebhookResultDTO(success=True, duplicate=True, processed_records=0)

        now = self._clock()
        if event is None:
            try:
                event = await self.events.add(
                    idempotency_key=key,
                    event_type=payload.event,
                    record_id=payload.record_id,
                    remote_last_modified=payload.last_modified,
                    payload=payload.model_dump(mode="json"),
                    now=now,
                )
            except IntegrityError:
                # Entrega concurrente del mismo evento
                await self.db.rollback()
                logger.info(f"Webhook duplicado (concurrente): {key}")
                return WebhookResultDTO(success=True, duplicate=True, processed_records=0)

        try:
            action = await self._apply(payload)
            await self.events.mark_processed(event, self._clock())
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            await self.ledger.log_error(
                ErrorKind.WEBHOOK,
                str(e),
                now=self._clock(),
                record_id=payload.record_id,
                details={"event": payload.event, "idempotency_key": key},
            )
            await self.db.commit()
            logger.error(f"Error procesando webhook {key}: {e}")
            raise WebhookProcessingException(payload.record_id, str(e)) from e

        logger.info(f"Webhook {payload.event} {payload.record_id}: {action}")
        return WebhookResultDTO(success=True, processed_records=1, action=action)

    async def _apply(self, payload: WebhookPayloadDTO) -> str:
        if payload.event == "deleted":
            listing = await self.listings.get_by_remote_id(payload.record_id)
            if listing is None or listing.is_deleted:
                return "skipped"
            await self.listings.soft_delete(listing, self._clock())
            return "deleted"

        ctx = await self.orchestrator.build_context()
        record = AirtableRecord(
            record_id=payload.record_id,
            fields=payload.fields,
            last_modified=ensure_utc(payload.last_modified),
        )
        if not payload.fields and ctx.config.validate():
            # Notificación sin campos: se lee el registro completo
            fetched = await asyncio.to_thread(ctx.client.get_record, payload.record_id)
            if not fetched.success:
                raise RuntimeError(f"No se pudo leer {payload.record_id}: {fetched.message}")
            record = fetched.data

        outcome = await ctx.applier.apply_remote(record, initiator=Side.REMOTE)
        return outcome.action
