"""
Tests unitarios de los casos de uso de administración de la integración.

Verifica:
- health_status: healthy / warning / critical según errores y último job
- pending_changes cuenta cambios locales desde el cursor local->remoto
- update_field_mapping persiste un mapeo válido
- test_connection solo usa las credenciales del request
- esquema, registro de webhook y re-sync de media contra un cliente falso
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from listing_sync.application.dto.sync_dto import (
    ConnectionTestRequestDTO,
    FieldMappingUpdateDTO,
    FieldSpecDTO,
    MediaSyncRequestDTO,
)
from listing_sync.application.services.connection_settings import ConnectionSettingsService
from listing_sync.application.services.media_synchronizer import MediaStorage
from listing_sync.application.use_cases.integration_use_cases import IntegrationUseCases
from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.core.config import settings
from listing_sync.domain.entities import ErrorKind, FieldCategory, JobMode, MediaType, SyncDirection, SyncJob
from listing_sync.infrastructure.external.airtable_sync.types import AirtableRecord, RemoteResult
from listing_sync.shared.exceptions.sync import SyncException

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def use_cases(db_session) -> IntegrationUseCases:
    await ConnectionSettingsService(db_session).save(
        {"token": "patTEST1234567890", "base_id": "appBase", "table_name": "Listings"}
    )
    await db_session.commit()
    orchestrator = SyncOrchestrator(db_session, clock=lambda: NOW, media_enabled=False)
    return IntegrationUseCases(db_session, orchestrator)


@pytest.mark.asyncio
async def test_status_is_healthy_then_warning_then_critical(use_cases: IntegrationUseCases) -> None:
    await use_cases.orchestrator.listings.create_local({"mls_number": "P-1"}, NOW - timedelta(minutes=1))

    healthy = await use_cases.get_sync_status()
    assert healthy.health_status == "healthy"
    assert healthy.is_configured is True
    assert healthy.pending_changes == 1

    await use_cases.ledger.log_error(ErrorKind.RECORD, "valor inválido", now=NOW - timedelta(minutes=5), record_id="7")
    warning = await use_cases.get_sync_status()
    assert warning.health_status == "warning"
    assert warning.error_count == 1
    assert warning.recent_errors[0].record_id == "7"

    failed = SyncJob(direction=SyncDirection.BOTH, mode=JobMode.DELTA, started_at=NOW - timedelta(minutes=2))
    failed.fail(ErrorKind.CONNECTIVITY, "Airtable no responde", NOW - timedelta(minutes=1))
    await use_cases.ledger.save_job(failed)
    critical = await use_cases.get_sync_status()
    assert critical.health_status == "critical"
    assert critical.last_sync.job_id == failed.id


@pytest.mark.asyncio
async def test_pending_changes_respect_local_cursor(use_cases: IntegrationUseCases) -> None:
    listings = use_cases.orchestrator.listings
    await listings.create_local({"mls_number": "P-1"}, NOW - timedelta(hours=2))
    await listings.create_local({"mls_number": "P-2"}, NOW - timedelta(minutes=10))
    await use_cases.ledger.advance_cursor(SyncDirection.LOCAL_TO_REMOTE, NOW - timedelta(hours=1), NOW)

    status = await use_cases.get_sync_status()

    assert status.pending_changes == 1


@pytest.mark.asyncio
async def test_update_field_mapping_accepts_valid_set(use_cases: IntegrationUseCases) -> None:
    dto = FieldMappingUpdateDTO(
        fields=[
            FieldSpecDTO(name="mls_number", remote_field="MLS Number", category=FieldCategory.MANUAL_SYNC),
            FieldSpecDTO(name="city", remote_field="City", category=FieldCategory.MANUAL_SYNC),
        ]
    )

    result = await use_cases.update_field_mapping(dto)

    assert result.valid is True
    assert result.accepted == 2
    mapping = await use_cases.get_field_mapping()
    assert {f["name"] for f in mapping.fields} == {"mls_number", "city"}
    assert mapping.count == 2


class _DummyAirtableClient:
    """Superficie de AirtableClient usada por la administración de la integración."""

    def __init__(self, config, records=(), schema_status: int = 200, webhook_status: int = 200) -> None:
        self.config = config
        self.records = {r.record_id: r for r in records}
        self.schema_status = schema_status
        self.webhook_status = webhook_status
        self.webhooks: list[str] = []

    def test_connection(self) -> RemoteResult:
        return RemoteResult(success=True, status_code=200, data={"records_found": 1})

    def list_tables(self) -> RemoteResult:
        return RemoteResult(success=True, status_code=200, data=[{"id": "tblListings", "name": "Listings"}])

    def get_table_schema(self) -> RemoteResult:
        if self.schema_status != 200:
            return RemoteResult(success=False, status_code=self.schema_status, message="Tabla no encontrada")
        fields = [{"id": "fld1", "name": "MLS Number", "type": "singleLineText"}]
        return RemoteResult(
            success=True, status_code=200, data={"table": "Listings", "table_id": "tblListings", "fields": fields}
        )

    def register_webhook(self, notification_url: str) -> RemoteResult:
        self.webhooks.append(notification_url)
        if self.webhook_status != 200:
            return RemoteResult(success=False, status_code=self.webhook_status, message="INVALID_PERMISSIONS")
        data = {"id": "ach1", "expirationTime": "2026-03-08T12:00:00.000Z"}
        return RemoteResult(success=True, status_code=200, data=data)

    def get_record(self, record_id: str) -> RemoteResult:
        return RemoteResult(success=True, status_code=200, data=self.records[record_id])

    def download_attachment(self, url: str) -> RemoteResult:
        return RemoteResult(success=True, status_code=200, data=b"JPEGDATA")


def _with_client(db_session, tmp_path, **client_kwargs) -> tuple[IntegrationUseCases, list]:
    built: list[_DummyAirtableClient] = []

    def factory(config):
        built.append(_DummyAirtableClient(config, **client_kwargs))
        return built[-1]

    orchestrator = SyncOrchestrator(
        db_session,
        client_factory=factory,
        storage=MediaStorage(str(tmp_path), "http://media.test/media"),
        clock=lambda: NOW,
        media_enabled=False,
    )
    return IntegrationUseCases(db_session, orchestrator), built


@pytest.mark.asyncio
async def test_connection_test_only_uses_request_credentials(use_cases, db_session, tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(settings, "AIRTABLE_TOKEN", "patFROMENV1234567")
    cases, built = _with_client(db_session, tmp_path)

    incomplete = await cases.test_connection(ConnectionTestRequestDTO(base_id="appOther", table_name="Listings"))

    # la config guardada y el token del entorno no completan el request
    assert incomplete.success is False
    assert incomplete.error_detail == "Faltan: token"
    assert built == []

    ok = await cases.test_connection(
        ConnectionTestRequestDTO(token="patOTHER123456789", base_id="appOther", table_name="Listings")
    )

    assert ok.success is True
    assert ok.tables == ["Listings"]
    assert ok.records_found == 1
    assert (built[0].config.token, built[0].config.base_id) == ("patOTHER123456789", "appOther")
    stored = await cases.connection.load()
    assert stored.base_id == "appBase"


@pytest.mark.asyncio
async def test_schema_is_returned_or_reported_missing(use_cases, db_session, tmp_path) -> None:
    cases, _ = _with_client(db_session, tmp_path)

    schema = await cases.get_schema()

    assert schema.table == "Listings"
    assert schema.field_count == 1
    assert schema.fields[0]["name"] == "MLS Number"

    missing, _ = _with_client(db_session, tmp_path, schema_status=404)
    with pytest.raises(SyncException) as exc_info:
        await missing.get_schema()
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_register_webhook_returns_id_or_raises_remote_error(use_cases, db_session, tmp_path) -> None:
    url = "https://sync.example.com/api/v1/webhooks/airtable"
    cases, built = _with_client(db_session, tmp_path)

    registered = await cases.register_webhook(url)

    assert registered == {"webhook_id": "ach1", "expiration_time": "2026-03-08T12:00:00.000Z"}
    assert built[0].webhooks == [url]

    rejected, _ = _with_client(db_session, tmp_path, webhook_status=403)
    with pytest.raises(SyncException) as exc_info:
        await rejected.register_webhook(url)
    assert exc_info.value.status_code == 502
    assert exc_info.value.details["reason"] == "INVALID_PERMISSIONS"


@pytest.mark.asyncio
async def test_sync_media_imports_photos_for_linked_listings(use_cases, db_session, tmp_path) -> None:
    photo = {
        "id": "att1",
        "url": "https://dl.airtable.test/att1",
        "filename": "front.jpg",
        "type": "image/jpeg",
        "size": 8,
    }
    record = AirtableRecord("recP", {"MLS Number": "P-1", "Listing Photos": [photo]}, NOW - timedelta(hours=1))
    cases, _ = _with_client(db_session, tmp_path, records=[record])
    listings = cases.orchestrator.listings
    linked = await listings.create_local({"mls_number": "P-1"}, NOW - timedelta(days=1))
    await listings.link_remote(linked, "recP", NOW - timedelta(days=1))
    unlinked = await listings.create_local({"mls_number": "P-2"}, NOW - timedelta(days=1))

    response = await cases.sync_media(
        MediaSyncRequestDTO(record_ids=[str(linked.id), str(unlinked.id)], media_types=[MediaType.IMAGES])
    )

    assert response.results[str(linked.id)] == {"synced": 1, "skipped": 0, "failed": 0}
    assert response.results[str(unlinked.id)]["error"] == "Listing no vinculado a Airtable"
    refreshed = await listings.get_by_remote_id("recP")
    assert len(refreshed.fields["listing_photos"]) == 1
    assert (tmp_path / f"listing_{linked.id}" / "att1_front.jpg").read_bytes() == b"JPEGDATA"
