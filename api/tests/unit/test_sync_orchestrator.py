"""
Tests unitarios del orquestador de jobs de sync.

Usa SQLite en memoria y un cliente Airtable falso inyectado vía
client_factory. Verifica:
- config inválida -> job Failed(config_invalid) sin tocar el mutex
- un delta sin cambios termina Completed con stats en cero
- un error de registro no aborta el batch ni el job
- el mutex rechaza un segundo job
- los cursores permiten reanudar un full sync
- un registro que falla se revierte (savepoint) sin afectar al resto
- un fallo de disco en media no cuenta como error de registro
- un job que pierde el lease termina Failed(stale_job); un lease vencido se retoma
- direction=both escribe en Airtable antes de aplicar cambios remotos
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import pytest
import pytest_asyncio

from listing_sync.application.services.connection_settings import ConnectionSettingsService
from listing_sync.application.services.media_synchronizer import MediaStorage
from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.core.config import settings
from listing_sync.domain.entities import ErrorKind, JobMode, JobStatus, SyncDirection, SyncJob
from listing_sync.infrastructure.external.airtable_sync.airtable_client import AirtableApiError
from listing_sync.infrastructure.external.airtable_sync.types import (
    AirtableRecord,
    BatchItemOutcome,
    BatchItemStatus,
    BatchOutcome,
    RemoteResult,
    RemoteWrite,
)
from listing_sync.infrastructure.repositories.listing_repository import ListingRepository
from listing_sync.shared.exceptions.sync import RecordNotFoundException, SyncAlreadyInProgressException

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FakeAirtableClient:
    """Tabla Airtable en memoria con la misma superficie que usa el orquestador."""

    def __init__(
        self,
        records: Iterable[AirtableRecord] = (),
        failing_keys: Iterable[str] = (),
        list_error: Optional[AirtableApiError] = None,
    ) -> None:
        self.records = {r.record_id: r for r in records}
        self.failing_keys = set(failing_keys)
        self.list_error = list_error
        self.written: list[RemoteWrite] = []
        self.calls: list[str] = []

    def list_records(self, **_):
        self.calls.append("list")
        if self.list_error:
            raise self.list_error
        return list(self.records.values())

    def download_attachment(self, url: str) -> RemoteResult:
        return RemoteResult(success=True, status_code=200, data=b"12345")

    def iter_records_modified_since(self, cursor: datetime):
        return [r for r in self.list_records() if r.last_modified >= cursor]

    def get_records_by_ids(self, record_ids):
        return {rid: self.records[rid] for rid in record_ids if rid in self.records}

    def get_record(self, record_id: str) -> RemoteResult:
        record = self.records.get(record_id)
        if record is None:
            return RemoteResult(success=False, status_code=404, message="NOT_FOUND")
        return RemoteResult(success=True, status_code=200, data=record)

    def upsert_records(self, writes: list[RemoteWrite]) -> BatchOutcome:
        outcome = BatchOutcome()
        for w in writes:
            self.written.append(w)
            self.calls.append(f"upsert:{w.key}")
            if w.key in self.failing_keys:
                outcome.items.append(
                    BatchItemOutcome(
                        key=w.key,
                        status=BatchItemStatus.ERRORED,
                        record_id=w.record_id,
                        message="INVALID_VALUE_FOR_COLUMN",
                    )
                )
            else:
                outcome.items.append(
                    BatchItemOutcome(
                        key=w.key,
                        status=BatchItemStatus.APPLIED,
                        record_id=w.record_id or f"recNew{w.key}",
                        created=w.is_create,
                    )
                )
        return outcome


def _orchestrator(db_session, client: _FakeAirtableClient) -> SyncOrchestrator:
    return SyncOrchestrator(
        db_session,
        client_factory=lambda config: client,
        clock=lambda: NOW,
        media_enabled=False,
    )


def _remote(record_id: str, stamp: datetime, **fields) -> AirtableRecord:
    return AirtableRecord(record_id=record_id, fields=fields, last_modified=stamp)


@pytest_asyncio.fixture
async def configured(db_session):
    await ConnectionSettingsService(db_session).save(
        {"token": "patTEST1234567890", "base_id": "appBase", "table_name": "Listings"}
    )
    await db_session.commit()
    return db_session


@pytest.mark.asyncio
async def test_invalid_config_fails_job_without_touching_anything(db_session, monkeypatch) -> None:
    monkeypatch.setattr(settings, "AIRTABLE_TOKEN", "")
    client = _FakeAirtableClient()
    orchestrator = _orchestrator(db_session, client)

    job = await orchestrator.run_full_sync()

    assert job.status is JobStatus.FAILED
    assert job.error_kind is ErrorKind.CONFIG_INVALID
    assert "token" in job.error_message
    assert job.stats.to_dict() == {
        "total_processed": 0,
        "created": 0,
        "updated": 0,
        "skipped": 0,
        "errors": 0,
        "media_synced": 0,
    }
    assert client.written == []
    assert await orchestrator.ledger.current_holder(NOW) is None
    assert await orchestrator.ledger.count_errors(job_id=job.id) == 1
    assert (await orchestrator.ledger.get_job(job.id)).status is JobStatus.FAILED


@pytest.mark.asyncio
async def test_future_delta_completes_with_no_changes(configured) -> None:
    client = _FakeAirtableClient([_remote("rec1", NOW - timedelta(hours=1), **{"MLS Number": "A-1"})])
    orchestrator = _orchestrator(configured, client)

    job = await orchestrator.run_delta_sync(since=NOW + timedelta(days=1))

    assert job.status is JobStatus.COMPLETED
    assert job.changes_processed == 0
    assert job.stats.total_processed == 0
    assert await orchestrator.ledger.get_cursor(SyncDirection.LOCAL_TO_REMOTE) is None
    assert await orchestrator.ledger.get_cursor(SyncDirection.REMOTE_TO_LOCAL) is None
    assert await orchestrator.ledger.current_holder(NOW) is None


@pytest.mark.asyncio
async def test_record_error_does_not_abort_local_to_remote_batch(configured) -> None:
    listings = ListingRepository(configured)
    created = []
    for i in range(10):
        listing = await listings.create_local(
            {"mls_number": f"MLS-{i}", "price": 250_000 + i}, NOW - timedelta(minutes=10)
        )
        await listings.link_remote(listing, f"rec{i}", NOW - timedelta(days=1))
        created.append(listing)
    await configured.commit()

    remote = [_remote(f"rec{i}", NOW - timedelta(days=1)) for i in range(10)]
    failing = str(created[3].id)
    client = _FakeAirtableClient(remote, failing_keys=[failing])
    orchestrator = _orchestrator(configured, client)

    job = await orchestrator.run_delta_sync(
        since=NOW - timedelta(hours=1), direction=SyncDirection.LOCAL_TO_REMOTE
    )

    assert job.status is JobStatus.COMPLETED
    assert job.stats.total_processed == 10
    assert job.stats.updated == 9
    assert job.stats.errors == 1
    assert job.stats.created == 0
    assert len(client.written) == 10
    assert all("MLS Number" in w.fields for w in client.written)

    errors = await orchestrator.ledger.recent_errors(limit=5)
    assert len(errors) == 1
    assert errors[0]["record_id"] == failing
    assert errors[0]["error_kind"] == ErrorKind.RECORD.value
    # con errores el cursor no avanza
    assert await orchestrator.ledger.get_cursor(SyncDirection.LOCAL_TO_REMOTE) is None


@pytest.mark.asyncio
async def test_second_job_is_rejected_while_lock_is_held(configured) -> None:
    orchestrator = _orchestrator(configured, _FakeAirtableClient())
    await orchestrator.ledger.acquire_lock("other-job", lease_seconds=900, now=NOW)

    with pytest.raises(SyncAlreadyInProgressException) as exc_info:
        await orchestrator.run_full_sync()

    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {"job_id": "other-job"}
    _, total = await orchestrator.ledger.list_jobs()
    assert total == 0


@pytest.mark.asyncio
async def test_full_sync_creates_locals_and_resumes_from_cursor(configured) -> None:
    older = _remote("recA", NOW - timedelta(hours=2), **{"MLS Number": "A-1", "Current Price": 300_000})
    newer = _remote("recB", NOW - timedelta(hours=1), **{"MLS Number": "B-2", "Listing Status": "Active"})
    client = _FakeAirtableClient([older, newer])
    orchestrator = _orchestrator(configured, client)

    first = await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL)

    assert first.status is JobStatus.COMPLETED
    assert first.stats.created == 2
    assert await orchestrator.ledger.get_cursor(SyncDirection.REMOTE_TO_LOCAL) == newer.last_modified
    listing = await orchestrator.listings.get_by_remote_id("recA")
    assert listing.fields == {"mls_number": "A-1", "price": 300_000}

    second = await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL)

    # solo se relee lo que está en o después del cursor, y ya está aplicado
    assert second.stats.total_processed == 1
    assert second.stats.skipped == 1
    assert second.stats.created == 0


@pytest.mark.asyncio
async def test_force_full_resets_cursor(configured) -> None:
    records = [_remote(f"rec{i}", NOW - timedelta(hours=i + 1), **{"MLS Number": f"M-{i}"}) for i in range(3)]
    orchestrator = _orchestrator(configured, _FakeAirtableClient(records))
    await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL)

    job = await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL, force_full=True)

    assert job.stats.total_processed == 3
    assert job.stats.skipped == 3


@pytest.mark.asyncio
async def test_unreachable_remote_fails_job_with_connectivity(configured) -> None:
    client = _FakeAirtableClient(list_error=AirtableApiError("down", status_code=503, retriable=True))
    orchestrator = _orchestrator(configured, client)

    job = await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL)

    assert job.status is JobStatus.FAILED
    assert job.error_kind is ErrorKind.CONNECTIVITY
    assert await orchestrator.ledger.current_holder(NOW) is None
    errors = await orchestrator.ledger.recent_errors()
    assert errors[0]["error_kind"] == ErrorKind.CONNECTIVITY.value


@pytest.mark.asyncio
async def test_single_record_pull_and_not_found(configured) -> None:
    record = _remote("recZ", NOW - timedelta(minutes=5), **{"MLS Number": "Z-9", "City": "Lewes"})
    orchestrator = _orchestrator(configured, _FakeAirtableClient([record]))

    result = await orchestrator.sync_single_record("recZ")

    assert result.status == "applied"
    assert set(result.changed_fields) == {"mls_number", "city"}
    assert (await orchestrator.listings.get_by_remote_id("recZ")) is not None

    with pytest.raises(RecordNotFoundException):
        await orchestrator.sync_single_record("recMissing")


@pytest.mark.asyncio
async def test_single_record_push_creates_remote_and_links(configured) -> None:
    listing = await ListingRepository(configured).create_local({"mls_number": "L-1"}, NOW)
    await configured.commit()
    client = _FakeAirtableClient()
    orchestrator = _orchestrator(configured, client)

    result = await orchestrator.sync_single_record(str(listing.id), SyncDirection.LOCAL_TO_REMOTE)

    assert result.status == "applied"
    assert result.changed_fields == ["mls_number"]
    assert client.written[0].is_create
    assert listing.remote_record_id == f"recNew{listing.id}"


@pytest.mark.asyncio
async def test_failing_record_is_rolled_back_without_affecting_others(configured, monkeypatch) -> None:
    good = _remote("recGood", NOW - timedelta(hours=2), **{"MLS Number": "G-1"})
    bad = _remote("recBad", NOW - timedelta(hours=1), **{"MLS Number": "B-1"})
    orchestrator = _orchestrator(configured, _FakeAirtableClient([good, bad]))
    original = orchestrator.listings.apply_sync_values

    async def apply_or_fail(listing, values, remote_modified_at, now):
        if listing.remote_record_id == "recBad":
            raise RuntimeError("CHECK constraint failed")
        await original(listing, values, remote_modified_at, now)

    monkeypatch.setattr(orchestrator.listings, "apply_sync_values", apply_or_fail)

    job = await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL)

    assert job.status is JobStatus.COMPLETED
    assert (job.stats.created, job.stats.errors) == (1, 1)
    assert await orchestrator.listings.get_by_remote_id("recGood") is not None
    # el listing creado antes del fallo no queda persistido
    assert await orchestrator.listings.get_by_remote_id("recBad") is None
    assert [l.remote_record_id for l in await orchestrator.listings.list_all()] == ["recGood"]
    assert await orchestrator.ledger.get_cursor(SyncDirection.REMOTE_TO_LOCAL) is None


class _DummyFullDiskStorage(MediaStorage):
    def save(self, listing_id: int, filename: str, content: bytes) -> str:
        raise OSError(28, "No space left on device")


@pytest.mark.asyncio
async def test_media_storage_failure_does_not_fail_the_record(configured, tmp_path) -> None:
    photo = {
        "id": "att1",
        "url": "https://dl.airtable.test/att1",
        "filename": "front.jpg",
        "type": "image/jpeg",
        "size": 5,
    }
    record = _remote("recM", NOW - timedelta(hours=1), **{"MLS Number": "M-1", "Listing Photos": [photo]})
    orchestrator = SyncOrchestrator(
        configured,
        client_factory=lambda config: _FakeAirtableClient([record]),
        storage=_DummyFullDiskStorage(str(tmp_path), "http://media.test/media"),
        clock=lambda: NOW,
        media_enabled=True,
    )

    job = await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL)

    assert job.status is JobStatus.COMPLETED
    assert (job.stats.created, job.stats.errors, job.stats.media_synced) == (1, 0, 0)
    listing = await orchestrator.listings.get_by_remote_id("recM")
    assert listing.fields["mls_number"] == "M-1"
    assert "listing_photos" not in listing.fields
    errors = await orchestrator.ledger.recent_errors()
    assert [e["error_kind"] for e in errors] == [ErrorKind.MEDIA.value]
    assert errors[0]["record_id"] == "recM"


@pytest.mark.asyncio
async def test_job_stops_when_another_job_takes_over_the_lease(configured, monkeypatch) -> None:
    await ConnectionSettingsService(configured).save({"batch_size": 1})
    await configured.commit()
    records = [_remote(f"rec{i}", NOW - timedelta(hours=3 - i), **{"MLS Number": f"M-{i}"}) for i in range(2)]
    orchestrator = _orchestrator(configured, _FakeAirtableClient(records))
    ledger = orchestrator.ledger
    heartbeat = ledger.heartbeat

    async def heartbeat_after_takeover(job_id, *, lease_seconds, now):
        # el lease vence antes del primer checkpoint y otro job toma el mutex
        await ledger.acquire_lock("job-new", lease_seconds=900, now=now + timedelta(seconds=lease_seconds + 1))
        return await heartbeat(job_id, lease_seconds=lease_seconds, now=now)

    monkeypatch.setattr(ledger, "heartbeat", heartbeat_after_takeover)

    job = await orchestrator.run_full_sync(direction=SyncDirection.REMOTE_TO_LOCAL)

    assert job.status is JobStatus.FAILED
    assert job.error_kind is ErrorKind.STALE_JOB
    assert job.stats.total_processed == 1
    assert len(await orchestrator.listings.list_all()) == 1
    stored = await ledger.get_job(job.id)
    assert (stored.status, stored.error_kind) == (JobStatus.FAILED, ErrorKind.STALE_JOB)
    assert await ledger.current_holder(NOW) == "job-new"
    assert await ledger.get_cursor(SyncDirection.REMOTE_TO_LOCAL) is None


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over_and_abandoned_job_marked_stale(configured) -> None:
    abandoned = SyncJob(direction=SyncDirection.BOTH, mode=JobMode.FULL, started_at=NOW - timedelta(hours=2))
    ledger = _orchestrator(configured, _FakeAirtableClient()).ledger
    await ledger.save_job(abandoned)
    await ledger.acquire_lock(abandoned.id, lease_seconds=60, now=NOW - timedelta(hours=2))
    orchestrator = _orchestrator(configured, _FakeAirtableClient())

    job = await orchestrator.run_full_sync()

    assert job.status is JobStatus.COMPLETED
    stale = await orchestrator.ledger.get_job(abandoned.id)
    assert stale.status is JobStatus.FAILED
    assert stale.error_kind is ErrorKind.STALE_JOB
    assert await orchestrator.ledger.current_holder(NOW) is None


@pytest.mark.asyncio
async def test_both_directions_push_before_pull_and_share_stats(configured, monkeypatch) -> None:
    local = await ListingRepository(configured).create_local({"mls_number": "L-1"}, NOW - timedelta(minutes=10))
    await configured.commit()
    client = _FakeAirtableClient([_remote("recR", NOW - timedelta(minutes=5), **{"MLS Number": "R-1"})])
    orchestrator = _orchestrator(configured, client)
    create_from_remote = orchestrator.listings.create_from_remote

    async def recording_create(record_id, *args, **kwargs):
        client.calls.append(f"apply:{record_id}")
        return await create_from_remote(record_id, *args, **kwargs)

    monkeypatch.setattr(orchestrator.listings, "create_from_remote", recording_create)

    job = await orchestrator.run_full_sync(direction=SyncDirection.BOTH)

    assert job.status is JobStatus.COMPLETED
    assert client.calls == [f"upsert:{local.id}", "list", "apply:recR"]
    assert (job.stats.total_processed, job.stats.created, job.stats.errors) == (2, 2, 0)
    assert local.remote_record_id == f"recNew{local.id}"
