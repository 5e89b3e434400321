"""
Cliente de Airtable REST API (sin SDKs externos).

Requisitos cubiertos:
- requests
- paginación por offset
- delay mínimo entre requests consecutivos
- rate-limit/backoff (timeouts, 429, 5xx) con tope de reintentos
- escrituras en batch (máximo 10 registros por request, límite de Airtable)
- resultados estructurados (RemoteResult / BatchOutcome) en lugar de excepciones
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Optional
from urllib.parse import quote

import requests
from loguru import logger

from .connection_config import ConnectionConfig
from .types import (
    AirtableRecord,
    BatchItemOutcome,
    BatchItemStatus,
    BatchOutcome,
    RemoteResult,
    RemoteWrite,
    isoformat_z,
    parse_airtable_datetime,
)

# Límite duro de Airtable para create/update
MAX_RECORDS_PER_REQUEST = 10
# Fórmulas muy largas son rechazadas; troceamos búsquedas por id
MAX_IDS_PER_FORMULA = 50


class AirtableApiError(RuntimeError):
    """Error de integración con Airtable (usado por los iteradores)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retriable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable


def build_incremental_filter_formula(last_modified_field: str, cursor: datetime) -> str:
    """
    Construye una fórmula Airtable para traer registros incrementales:

    - Incluye igualdad (>=) para ser tolerante a cortes a mitad de página.
      La idempotencia queda asegurada por el merge LWW.

    Nota: Airtable no soporta operador >= directo en fórmulas con fechas.
    Se usa OR(IS_AFTER(...), IS_SAME(...)).
    """
    cursor_str = isoformat_z(cursor)
    field_ref = "{" + last_modified_field + "}"
    return (
        f"OR("
        f"IS_AFTER({field_ref}, DATETIME_PARSE('{cursor_str}')), "
        f"IS_SAME({field_ref}, DATETIME_PARSE('{cursor_str}'))"
        f")"
    )


def build_record_ids_formula(record_ids: list[str]) -> str:
    parts = [f"RECORD_ID()='{rid}'" for rid in record_ids]
    if len(parts) == 1:
        return parts[0]
    return "OR(" + ", ".join(parts) + ")"


def _chunks(items: list[Any], size: int) -> Iterator[list[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _error_message(resp: Any) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return (resp.text or "")[:500]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return f"{error.get('type', 'ERROR')}: {error.get('message', '')}".strip()
    if error:
        return str(error)
    return (resp.text or "")[:500]


class AirtableClient:
    """
    Cliente HTTP de Airtable con throttling y reintentos.

    Importante:
    - Es síncrono (requests); el orquestador lo llama vía asyncio.to_thread.
    - No hace cast de tipos de campos: eso lo decide el RecordMapper.
    - sleep/clock son inyectables para testear la política sin esperar.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._base_url = config.api_url.rstrip("/")
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: Optional[float] = None

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def table_url(self) -> str:
        return f"{self._base_url}/{self._config.base_id}/{quote(self._config.table_name, safe='')}"

    @property
    def write_chunk_size(self) -> int:
        return max(1, min(self._config.batch_size, MAX_RECORDS_PER_REQUEST))

    # ------------------------------------------------------------------
    # Lectura
    # ------------------------------------------------------------------

    def list_records(
        self,
        *,
        filter_formula: Optional[str] = None,
        fields: Optional[list[str]] = None,
        sort_field: Optional[str] = None,
        page_size: int = 100,
    ) -> Iterator[AirtableRecord]:
        """
        Itera todos los registros de la tabla (opcionalmente filtrados).

        Raises:
            AirtableApiError: si una página falla tras agotar reintentos
        """
        offset: Optional[str] = None
        while True:
            query: list[tuple[str, Any]] = [("pageSize", page_size)]
            if filter_formula:
                query.append(("filterByFormula", filter_formula))
            if offset:
                query.append(("offset", offset))
            # Serialización manual de sort para evitar "sort=field&sort=direction"
            if sort_field:
                query.append(("sort[0][field]", sort_field))
                query.append(("sort[0][direction]", "asc"))
            for f in fields or []:
                query.append(("fields[]", f))

            payload = self._request_json("GET", self.table_url, query=query)
            for rec in payload.get("records") or []:
                yield self._to_record(rec)

            offset = payload.get("offset")
            if not offset:
                break

    def iter_records_modified_since(self, cursor: datetime) -> Iterator[AirtableRecord]:
        """Registros con last_modified >= cursor, ordenados asc."""
        field = self._config.last_modified_field
        return self.list_records(
            filter_formula=build_incremental_filter_formula(field, cursor),
            sort_field=field,
        )

    def get_records_by_ids(self, record_ids: Iterable[str]) -> dict[str, AirtableRecord]:
        ids = [rid for rid in dict.fromkeys(record_ids) if rid]
        found: dict[str, AirtableRecord] = {}
        for chunk in _chunks(ids, MAX_IDS_PER_FORMULA):
            for record in self.list_records(filter_formula=build_record_ids_formula(chunk)):
                found[record.record_id] = record
        return found

    def get_record(self, record_id: str) -> RemoteResult:
        result = self._send("GET", f"{self.table_url}/{quote(record_id, safe='')}")
        if not result.success:
            return result
        try:
            record = self._to_record(result.data or {})
        except AirtableApiError as e:
            return RemoteResult(success=False, status_code=result.status_code, message=str(e))
        return RemoteResult(success=True, status_code=result.status_code, data=record)

    def test_connection(self) -> RemoteResult:
        """GET tabla?maxRecords=1: valida token, base y tabla en una sola llamada."""
        result = self._send("GET", self.table_url, params=[("maxRecords", 1)])
        if not result.success:
            return result
        records = (result.data or {}).get("records") or []
        return RemoteResult(success=True, status_code=result.status_code, data={"records_found": len(records)})

    def list_tables(self) -> RemoteResult:
        result = self._send("GET", f"{self._base_url}/meta/bases/{self._config.base_id}/tables")
        if not result.success:
            return result
        tables = (result.data or {}).get("tables") or []
        return RemoteResult(success=True, status_code=result.status_code, data=tables)

    def get_table_schema(self) -> RemoteResult:
        """Campos de la tabla configurada (meta API)."""
        result = self.list_tables()
        if not result.success:
            return result
        for table in result.data:
            if self._config.table_name in (table.get("name"), table.get("id")):
                fields = [
                    {"id": f.get("id"), "name": f.get("name"), "type": f.get("type")}
                    for f in table.get("fields") or []
                ]
                return RemoteResult(
                    success=True,
                    status_code=result.status_code,
                    data={"table": table.get("name"), "table_id": table.get("id"), "fields": fields},
                )
        return RemoteResult(
            success=False,
            status_code=404,
            message=f"Tabla '{self._config.table_name}' no encontrada en la base",
        )

    def download_attachment(self, url: str) -> RemoteResult:
        """Descarga los bytes de un attachment (las URLs de Airtable ya van firmadas)."""
        return self._send("GET", url, auth=False, raw=True)

    # ------------------------------------------------------------------
    # Escritura
    # ------------------------------------------------------------------

    def upsert_records(self, writes: list[RemoteWrite]) -> BatchOutcome:
        """
        Crea o actualiza registros en batches de write_chunk_size.

        Cada item termina como applied, skipped (sin campos que escribir) o
        errored. Si Airtable rechaza un batch completo con un error no
        recuperable, se reintenta registro a registro para aislar el culpable.
        """
        outcome = BatchOutcome()
        pending: list[RemoteWrite] = []
        for w in writes:
            if not w.fields:
                outcome.items.append(
                    BatchItemOutcome(key=w.key, status=BatchItemStatus.SKIPPED, record_id=w.record_id, message="Sin cambios")
                )
                continue
            pending.append(w)

        creates = [w for w in pending if w.is_create]
        updates = [w for w in pending if not w.is_create]
        for chunk in _chunks(creates, self.write_chunk_size):
            outcome.items.extend(self._write_chunk("POST", chunk))
        for chunk in _chunks(updates, self.write_chunk_size):
            outcome.items.extend(self._write_chunk("PATCH", chunk))
        return outcome

    def register_webhook(self, notification_url: str) -> RemoteResult:
        body = {
            "notificationUrl": notification_url,
            "specification": {"options": {"filters": {"dataTypes": ["tableData"]}}},
        }
        return self._send("POST", f"{self._base_url}/bases/{self._config.base_id}/webhooks", json_body=body)

    def _write_chunk(self, method: str, chunk: list[RemoteWrite]) -> list[BatchItemOutcome]:
        body = {
            "records": [
                {"fields": w.fields} if w.is_create else {"id": w.record_id, "fields": w.fields}
                for w in chunk
            ],
            "typecast": True,
        }
        result = self._send(method, self.table_url, json_body=body)

        if result.success:
            returned = (result.data or {}).get("records") or []
            items = []
            for i, w in enumerate(chunk):
                record_id = returned[i].get("id") if i < len(returned) else w.record_id
                items.append(
                    BatchItemOutcome(
                        key=w.key,
                        status=BatchItemStatus.APPLIED,
                        record_id=record_id,
                        created=w.is_create,
                    )
                )
            return items

        if not result.retriable and len(chunk) > 1:
            logger.warning(
                f"Airtable rechazó batch de {len(chunk)} registros ({result.status_code}): "
                f"{result.message}. Reintentando registro a registro."
            )
            items = []
            for w in chunk:
                items.extend(self._write_chunk(method, [w]))
            return items

        return [
            BatchItemOutcome(
                key=w.key,
                status=BatchItemStatus.ERRORED,
                record_id=w.record_id,
                message=result.message,
                retriable=result.retriable,
            )
            for w in chunk
        ]

    # ------------------------------------------------------------------
    # Transporte
    # ------------------------------------------------------------------

    def _to_record(self, rec: dict[str, Any]) -> AirtableRecord:
        rec_id = rec.get("id")
        if not rec_id:
            # Caso raro; preferimos fallar temprano y visible.
            raise AirtableApiError("Airtable devolvió un record sin 'id'")
        rec_fields = rec.get("fields") or {}
        last_modified = (
            parse_airtable_datetime(rec_fields.get(self._config.last_modified_field))
            or parse_airtable_datetime(rec.get("createdTime"))
        )
        if last_modified is None:
            raise AirtableApiError(
                f"El record {rec_id} no contiene el campo '{self._config.last_modified_field}'. "
                f"Configura AIRTABLE_LAST_MOD_FIELD correctamente o asegúrate que el field existe."
            )
        return AirtableRecord(record_id=rec_id, fields=rec_fields, last_modified=last_modified)

    def _request_json(self, method: str, url: str, *, query: list[tuple[str, Any]]) -> dict[str, Any]:
        result = self._send(method, url, params=query)
        if not result.success:
            raise AirtableApiError(
                f"Airtable request falló {result.status_code}: {result.message}",
                status_code=result.status_code,
                retriable=result.retriable,
            )
        return result.data or {}

    def _throttle(self) -> None:
        """Garantiza al menos request_delay_s entre requests consecutivos."""
        delay = self._config.request_delay_s
        if self._last_request_at is not None and delay > 0:
            elapsed = self._clock() - self._last_request_at
            if elapsed < delay:
                self._sleep(delay - elapsed)
        self._last_request_at = self._clock()

    def _backoff_s(self, attempt: int, retry_after: Optional[str]) -> float:
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return self._config.retry_base_delay_s * (2 ** attempt)

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[list[tuple[str, Any]]] = None,
        json_body: Optional[dict[str, Any]] = None,
        auth: bool = True,
        raw: bool = False,
    ) -> RemoteResult:
        """
        Request HTTP con backoff.

        Estrategia:
        - timeout / error de conexión / 429 / 5xx: reintento con
          retry_base_delay_s * 2^intento (respeta Retry-After si existe).
        - 4xx (no 429): error inmediato (config/auth/payload mal).
        """
        headers: dict[str, str] = {}
        if auth:
            headers["Authorization"] = f"Bearer {self._config.token}"
        if json_body is not None:
            headers["Content-Type"] = "application/json"

        max_retries = max(self._config.max_retries, 0)
        result = RemoteResult(success=False, retriable=True, message="Sin intentos")
        for attempt in range(max_retries + 1):
            self._throttle()
            retry_after: Optional[str] = None
            try:
                resp = self._session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self._config.timeout_s,
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                result = RemoteResult(success=False, retriable=True, message=f"Error de red: {e}")
            else:
                status = resp.status_code
                if 200 <= status < 300:
                    if raw:
                        return RemoteResult(success=True, status_code=status, data=resp.content)
                    try:
                        return RemoteResult(success=True, status_code=status, data=resp.json())
                    except ValueError:
                        return RemoteResult(success=False, status_code=status, message="Respuesta JSON inválida")

                retriable = status == 429 or 500 <= status < 600
                result = RemoteResult(
                    success=False,
                    status_code=status,
                    retriable=retriable,
                    message=_error_message(resp),
                )
                if not retriable:
                    return result
                retry_after = resp.headers.get("Retry-After")

            if attempt >= max_retries:
                break

            sleep_s = self._backoff_s(attempt, retry_after)
            logger.warning(
                f"Airtable {method} falló ({result.status_code or 'red'}), "
                f"reintento {attempt + 1}/{max_retries} en {sleep_s:.2f}s"
            )
            self._sleep(sleep_s)

        logger.error(f"Airtable {method} {url} agotó reintentos: {result.message}")
        return result
