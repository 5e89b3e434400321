"""
Tests unitarios del cliente Airtable.

Verifica la política de transporte sin red real:
- delay mínimo entre requests consecutivos
- backoff exponencial en 429/5xx/errores de red, sin reintentar otros 4xx
- escrituras en chunks de como máximo 10 registros
- aislamiento registro a registro cuando Airtable rechaza un batch
- esquema vía meta API y registro de webhooks
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import pytest
import requests

from listing_sync.infrastructure.external.airtable_sync.airtable_client import (
    AirtableApiError,
    AirtableClient,
)
from listing_sync.infrastructure.external.airtable_sync.connection_config import ConnectionConfig
from listing_sync.infrastructure.external.airtable_sync.types import BatchItemStatus, RemoteWrite


class _DummyResponse:
    def __init__(
        self,
        status_code: int,
        payload: Any = None,
        headers: Optional[dict[str, str]] = None,
        content: bytes = b"",
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.content = content
        self.text = "" if payload is None else str(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("sin JSON")
        return self._payload


class _DummySession:
    """Imita requests.Session.request delegando en un handler."""

    def __init__(self, handler: Callable[..., _DummyResponse]) -> None:
        self._handler = handler
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        return self._handler(method=method, url=url, params=params, body=json)


def _queue(*responses: Any) -> Callable[..., _DummyResponse]:
    pending = list(responses)

    def handler(**_: Any) -> _DummyResponse:
        item = pending.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return handler


def _config(**overrides: Any) -> ConnectionConfig:
    values: dict[str, Any] = {
        "token": "patTOKEN1234567890",
        "base_id": "appBase",
        "table_name": "Listings",
        "request_delay_ms": 0,
        "retry_base_delay_s": 1.0,
        "max_retries": 3,
    }
    values.update(overrides)
    return ConnectionConfig(**values)


def _client(session: _DummySession, config: Optional[ConnectionConfig] = None, clock=None):
    sleeps: list[float] = []
    client = AirtableClient(
        config or _config(),
        session=session,
        sleep=sleeps.append,
        clock=clock or (lambda: 0.0),
    )
    return client, sleeps


def _ok_records(*records: dict[str, Any]) -> _DummyResponse:
    return _DummyResponse(200, {"records": list(records)})


def _record(record_id: str, **fields: Any) -> dict[str, Any]:
    return {"id": record_id, "createdTime": "2025-12-01T00:00:00.000Z", "fields": fields}


def test_throttle_enforces_minimum_delay_between_requests() -> None:
    session = _DummySession(_queue(_ok_records(), _ok_records()))
    # primer request en t=0; el segundo llega 50ms después
    ticks = iter([0.0, 0.05, 0.05])
    client, sleeps = _client(session, _config(request_delay_ms=200), clock=lambda: next(ticks))

    client.test_connection()
    client.test_connection()

    assert len(session.calls) == 2
    assert sleeps == [pytest.approx(0.15)]


def test_no_throttle_sleep_when_delay_already_elapsed() -> None:
    session = _DummySession(_queue(_ok_records(), _ok_records()))
    ticks = iter([0.0, 5.0, 5.0])
    client, sleeps = _client(session, _config(request_delay_ms=200), clock=lambda: next(ticks))

    client.test_connection()
    client.test_connection()

    assert sleeps == []


def test_rate_limit_retries_with_exponential_backoff() -> None:
    session = _DummySession(
        _queue(_DummyResponse(429, {"error": "RATE_LIMIT"}), _DummyResponse(429, {"error": "RATE_LIMIT"}), _ok_records(_record("rec1")))
    )
    client, sleeps = _client(session)

    result = client.test_connection()

    assert result.success is True
    assert result.data == {"records_found": 1}
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retry_after_header_overrides_backoff() -> None:
    session = _DummySession(_queue(_DummyResponse(429, {}, headers={"Retry-After": "5"}), _ok_records()))
    client, sleeps = _client(session)

    assert client.test_connection().success is True
    assert sleeps == [5.0]


def test_client_error_is_not_retried() -> None:
    error = {"error": {"type": "AUTHENTICATION_REQUIRED", "message": "Token inválido"}}
    session = _DummySession(_queue(_DummyResponse(401, error)))
    client, sleeps = _client(session)

    result = client.test_connection()

    assert result.success is False
    assert result.retriable is False
    assert result.status_code == 401
    assert "AUTHENTICATION_REQUIRED" in result.message
    assert len(session.calls) == 1
    assert sleeps == []


def test_server_errors_exhaust_retries_and_report_retriable() -> None:
    session = _DummySession(lambda **_: _DummyResponse(503, {"error": "SERVICE_UNAVAILABLE"}))
    client, sleeps = _client(session, _config(max_retries=2))

    result = client.test_connection()

    assert result.success is False
    assert result.retriable is True
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_network_error_is_retried() -> None:
    session = _DummySession(_queue(requests.ConnectionError("reset"), _ok_records()))
    client, sleeps = _client(session)

    assert client.test_connection().success is True
    assert sleeps == [1.0]


def test_authorization_header_is_sent() -> None:
    session = _DummySession(_queue(_ok_records()))
    client, _ = _client(session)

    client.test_connection()

    assert session.calls[0]["headers"]["Authorization"] == "Bearer patTOKEN1234567890"
    assert session.calls[0]["url"] == "https://api.airtable.com/v0/appBase/Listings"


def _echo_writes(reject: Callable[[list[dict[str, Any]]], bool] = lambda records: False):
    counter = {"n": 0}

    def handler(method: str, body: Optional[dict[str, Any]] = None, **_: Any) -> _DummyResponse:
        records = body["records"]
        if reject(records):
            return _DummyResponse(422, {"error": {"type": "INVALID_VALUE_FOR_COLUMN", "message": "valor inválido"}})
        returned = []
        for rec in records:
            counter["n"] += 1
            returned.append({"id": rec.get("id") or f"recNew{counter['n']}", "fields": rec["fields"]})
        return _DummyResponse(200, {"records": returned})

    return handler


def test_creates_are_written_in_chunks_of_ten() -> None:
    session = _DummySession(_echo_writes())
    client, _ = _client(session, _config(batch_size=50))
    writes = [RemoteWrite(key=str(i), fields={"MLS Number": f"MLS-{i}"}) for i in range(23)]

    outcome = client.upsert_records(writes)

    assert [len(c["json"]["records"]) for c in session.calls] == [10, 10, 3]
    assert all(c["method"] == "POST" for c in session.calls)
    assert all(c["json"]["typecast"] is True for c in session.calls)
    assert outcome.applied == 23
    assert all(item.created for item in outcome.items)
    assert len({item.record_id for item in outcome.items}) == 23


def test_write_chunk_size_follows_smaller_batch_size() -> None:
    session = _DummySession(_echo_writes())
    client, _ = _client(session, _config(batch_size=4))
    writes = [RemoteWrite(key=str(i), fields={"City": "Dover"}, record_id=f"rec{i}") for i in range(9)]

    outcome = client.upsert_records(writes)

    assert client.write_chunk_size == 4
    assert [len(c["json"]["records"]) for c in session.calls] == [4, 4, 1]
    assert all(c["method"] == "PATCH" for c in session.calls)
    assert outcome.applied == 9
    assert not any(item.created for item in outcome.items)


def test_rejected_batch_falls_back_to_single_record_writes() -> None:
    def reject(records: list[dict[str, Any]]) -> bool:
        return len(records) > 1 or records[0]["fields"].get("City") == "BAD"

    session = _DummySession(_echo_writes(reject))
    client, sleeps = _client(session)
    writes = [
        RemoteWrite(key="1", fields={"City": "Dover"}, record_id="rec1"),
        RemoteWrite(key="2", fields={"City": "BAD"}, record_id="rec2"),
        RemoteWrite(key="3", fields={"City": "Lewes"}, record_id="rec3"),
    ]

    outcome = client.upsert_records(writes)

    assert len(session.calls) == 4
    assert outcome.applied == 2
    assert outcome.errored == 1
    failed = [i for i in outcome.items if i.status is BatchItemStatus.ERRORED][0]
    assert failed.key == "2"
    assert failed.retriable is False
    assert "INVALID_VALUE_FOR_COLUMN" in failed.message
    assert outcome.connectivity_failed is False
    assert sleeps == []


def test_writes_without_fields_are_skipped_without_request() -> None:
    session = _DummySession(_echo_writes())
    client, _ = _client(session)

    outcome = client.upsert_records([RemoteWrite(key="1", fields={}, record_id="rec1")])

    assert session.calls == []
    assert outcome.skipped == 1


def test_exhausted_retries_mark_batch_as_connectivity_failure() -> None:
    session = _DummySession(lambda **_: _DummyResponse(503, {}))
    client, _ = _client(session, _config(max_retries=0))
    writes = [RemoteWrite(key=str(i), fields={"City": "Dover"}, record_id=f"rec{i}") for i in range(3)]

    outcome = client.upsert_records(writes)

    # un fallo retriable no se trocea registro a registro
    assert len(session.calls) == 1
    assert outcome.errored == 3
    assert outcome.connectivity_failed is True


def test_incremental_listing_paginates_and_sorts_by_last_modified() -> None:
    first = _DummyResponse(
        200,
        {"records": [_record("rec1", **{"Last Modified": "2026-01-02T00:00:00.000Z"})], "offset": "itr1"},
    )
    second = _ok_records({"id": "rec2", "createdTime": "2026-01-03T00:00:00.000Z", "fields": {"City": "Dover"}})
    session = _DummySession(_queue(first, second))
    client, _ = _client(session)

    records = list(client.iter_records_modified_since(datetime(2026, 1, 1, tzinfo=timezone.utc)))

    assert [r.record_id for r in records] == ["rec1", "rec2"]
    # sin campo last-modified se usa createdTime
    assert records[1].last_modified == datetime(2026, 1, 3, tzinfo=timezone.utc)
    params = dict(session.calls[0]["params"])
    assert "IS_AFTER({Last Modified}" in params["filterByFormula"]
    assert params["sort[0][field]"] == "Last Modified"
    assert ("offset", "itr1") in session.calls[1]["params"]


def test_listing_failure_raises_api_error_with_status() -> None:
    session = _DummySession(_queue(_DummyResponse(422, {"error": {"type": "INVALID_FILTER_BY_FORMULA"}})))
    client, _ = _client(session)

    with pytest.raises(AirtableApiError) as exc_info:
        list(client.list_records(filter_formula="BAD("))

    assert exc_info.value.status_code == 422
    assert exc_info.value.retriable is False


def test_get_record_returns_parsed_record() -> None:
    payload = {"id": "rec9", "fields": {"Last Modified": "2026-02-01T08:30:00.000Z", "City": "Lewes"}}
    session = _DummySession(_queue(_DummyResponse(200, payload)))
    client, _ = _client(session)

    result = client.get_record("rec9")

    assert result.success is True
    assert result.data.record_id == "rec9"
    assert result.data.fields["City"] == "Lewes"
    assert session.calls[0]["url"].endswith("/Listings/rec9")


def _tables_payload() -> dict[str, Any]:
    return {
        "tables": [
            {"id": "tblAgents", "name": "Agents", "fields": [{"id": "fld0", "name": "Name", "type": "singleLineText"}]},
            {
                "id": "tblListings",
                "name": "Listings",
                "fields": [
                    {"id": "fld1", "name": "MLS Number", "type": "singleLineText"},
                    {"id": "fld2", "name": "Listing Photos", "type": "multipleAttachments", "options": {}},
                ],
            },
        ]
    }


def test_table_schema_is_read_from_meta_api() -> None:
    session = _DummySession(_queue(_DummyResponse(200, _tables_payload()), _DummyResponse(200, _tables_payload())))
    client, _ = _client(session)

    tables = client.list_tables()
    schema = client.get_table_schema()

    assert [t["name"] for t in tables.data] == ["Agents", "Listings"]
    assert session.calls[0]["url"] == "https://api.airtable.com/v0/meta/bases/appBase/tables"
    assert schema.success is True
    assert schema.data == {
        "table": "Listings",
        "table_id": "tblListings",
        "fields": [
            {"id": "fld1", "name": "MLS Number", "type": "singleLineText"},
            {"id": "fld2", "name": "Listing Photos", "type": "multipleAttachments"},
        ],
    }


def test_table_schema_reports_missing_table() -> None:
    session = _DummySession(_queue(_DummyResponse(200, _tables_payload())))
    client, _ = _client(session, _config(table_name="Open Houses"))

    result = client.get_table_schema()

    assert result.success is False
    assert result.status_code == 404
    assert "Open Houses" in result.message


def test_register_webhook_posts_table_data_specification() -> None:
    session = _DummySession(_queue(_DummyResponse(200, {"id": "ach123", "expirationTime": "2026-03-08T12:00:00.000Z"})))
    client, _ = _client(session)

    result = client.register_webhook("https://sync.example.com/api/v1/webhooks/airtable")

    assert result.success is True
    assert result.data["id"] == "ach123"
    call = session.calls[0]
    assert (call["method"], call["url"]) == ("POST", "https://api.airtable.com/v0/bases/appBase/webhooks")
    assert call["json"]["notificationUrl"] == "https://sync.example.com/api/v1/webhooks/airtable"
    assert call["json"]["specification"]["options"]["filters"]["dataTypes"] == ["tableData"]
