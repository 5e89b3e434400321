"""
Tipos y utilidades puras para el cliente Airtable.

Se mantienen libres de I/O para poder testearlos fácilmente.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    """Retorna la hora actual en UTC, como datetime aware."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normaliza datetime a UTC (aware).

    SQLite devuelve datetimes naive; Airtable devuelve ISO8601 con zona.
    Normalizamos para comparar/almacenar de forma consistente.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_airtable_datetime(raw: Any) -> Optional[datetime]:
    """Parsea "2025-12-16T10:15:00.000Z" (o datetime) a UTC aware. None si no aplica."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    try:
        return ensure_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))
    except ValueError:
        return None


def isoformat_z(dt: datetime) -> str:
    """Serializa datetime a ISO8601 con 'Z' (UTC) para fórmulas Airtable."""
    dt_utc = ensure_utc(dt)
    return dt_utc.replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class AirtableRecord:
    """Registro Airtable mínimo para sync."""

    record_id: str
    fields: dict[str, Any]
    last_modified: datetime


@dataclass(frozen=True)
class RemoteResult:
    """
    Resultado estructurado de una llamada al API.

    retriable indica si el fallo era transitorio (timeout, 429, 5xx) y se
    agotaron los reintentos; los 4xx restantes son no recuperables.
    """

    success: bool
    status_code: Optional[int] = None
    retriable: bool = False
    message: str = ""
    data: Any = None


class BatchItemStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    ERRORED = "errored"


@dataclass(frozen=True)
class RemoteWrite:
    """
    Escritura de un registro hacia Airtable.

    key identifica el registro del lado local (listing id); record_id es None
    para creaciones.
    """

    key: str
    fields: dict[str, Any]
    record_id: Optional[str] = None

    @property
    def is_create(self) -> bool:
        return self.record_id is None


@dataclass(frozen=True)
class BatchItemOutcome:
    key: str
    status: BatchItemStatus
    record_id: Optional[str] = None
    created: bool = False
    message: str = ""
    retriable: bool = False


@dataclass
class BatchOutcome:
    items: list[BatchItemOutcome] = field(default_factory=list)

    def _count(self, status: BatchItemStatus) -> int:
        return sum(1 for i in self.items if i.status is status)

    @property
    def applied(self) -> int:
        return self._count(BatchItemStatus.APPLIED)

    @property
    def skipped(self) -> int:
        return self._count(BatchItemStatus.SKIPPED)

    @property
    def errored(self) -> int:
        return self._count(BatchItemStatus.ERRORED)

    @property
    def connectivity_failed(self) -> bool:
        """True si todos los items fallaron por errores transitorios agotados."""
        errored = [i for i in self.items if i.status is BatchItemStatus.ERRORED]
        return bool(errored) and len(errored) == len(self.items) and all(i.retriable for i in errored)
