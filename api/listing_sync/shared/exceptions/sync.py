"""
Excepciones a nivel de request del motor de sincronización.

Los errores por registro NO se modelan como excepciones hacia el caller:
se acumulan en SyncStats y en el ledger de errores.
"""
from typing import Any, Optional

from listing_sync.shared.exceptions.base import AppException


class SyncException(AppException):
    """Excepción base para errores de sincronización."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "SYNC_ERROR",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            details=details,
        )


class ConfigInvalidException(SyncException):
    """La configuración de conexión está incompleta (token, base o tabla vacíos)."""

    def __init__(self, missing: list[str]):
        super().__init__(
            message=f"Configuración de Airtable incompleta: faltan {', '.join(missing)}",
            error_code="CONFIG_INVALID",
            details={"missing": missing},
        )


class SyncAlreadyInProgressException(SyncException):
    """Otro job mantiene el mutex de sincronización."""

    def __init__(self, holder_job_id: Optional[str] = None):
        super().__init__(
            message="Ya hay una sincronización en curso",
            status_code=409,
            error_code="SYNC_ALREADY_IN_PROGRESS",
            details={"job_id": holder_job_id} if holder_job_id else None,
        )


class FieldMappingInvalidException(SyncException):
    """El set de FieldSpec propuesto no es válido."""

    def __init__(self, errors: list[str]):
        super().__init__(
            message="Mapeo de campos inválido",
            error_code="FIELD_MAPPING_INVALID",
            details={"errors": errors},
        )


class RecordNotFoundException(SyncException):
    """No existe el registro pedido en el lado indicado."""

    def __init__(self, record_id: str, side: str):
        super().__init__(
            message=f"Registro {record_id} no encontrado en {side}",
            status_code=404,
            error_code="RECORD_NOT_FOUND",
            details={"record_id": record_id, "side": side},
        )


class WebhookValidationException(SyncException):
    """Payload de webhook mal formado."""

    def __init__(self, message: str, errors: Optional[list[Any]] = None):
        super().__init__(
            message=message,
            error_code="WEBHOOK_INVALID",
            details={"errors": errors} if errors else None,
        )


class WebhookSignatureException(SyncException):
    """Firma HMAC del webhook ausente o incorrecta."""

    def __init__(self):
        super().__init__(
            message="Firma de webhook inválida",
            status_code=401,
            error_code="WEBHOOK_SIGNATURE_INVALID",
        )


class WebhookProcessingException(SyncException):
    """Fallo aplicando un webhook válido; el emisor debe reintentar."""

    def __init__(self, record_id: str, reason: str):
        super().__init__(
            message=f"Error procesando webhook para {record_id}",
            status_code=500,
            error_code="WEBHOOK_PROCESSING_FAILED",
            details={"record_id": record_id, "reason": reason},
        )
