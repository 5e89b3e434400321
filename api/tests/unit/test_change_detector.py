"""
Tests unitarios del detector de cambios.

Verifica:
- si Airtable rechaza filterByFormula se enumera la tabla y se filtra en cliente
- otros errores remotos se propagan
- los cambios locales respetan el cursor y excluyen soft-deleted
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from listing_sync.application.services.change_detector import ChangeDetector
from listing_sync.domain.entities import Side
from listing_sync.infrastructure.external.airtable_sync.airtable_client import AirtableApiError
from listing_sync.infrastructure.external.airtable_sync.types import AirtableRecord
from listing_sync.infrastructure.repositories.listing_repository import ListingRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FilterRejectingClient:
    """Rechaza filterByFormula con el status indicado; list_records sin filtro funciona."""

    def __init__(self, records: list[AirtableRecord], status_code: int) -> None:
        self.records = records
        self.status_code = status_code

    def iter_records_modified_since(self, cursor):
        raise AirtableApiError("INVALID_FILTER_BY_FORMULA", status_code=self.status_code)

    def list_records(self, **_):
        return list(self.records)


def _records() -> list[AirtableRecord]:
    return [
        AirtableRecord("rec1", {"City": "Dover"}, NOW - timedelta(hours=3)),
        AirtableRecord("rec2", {"City": "Lewes"}, NOW - timedelta(hours=1)),
        AirtableRecord("rec3", {"City": "Milford"}, NOW),
    ]


@pytest.mark.asyncio
async def test_rejected_filter_falls_back_to_client_side_filtering(db_session) -> None:
    detector = ChangeDetector(ListingRepository(db_session), _FilterRejectingClient(_records(), 422))

    changeset = await detector.changes_since(NOW - timedelta(hours=1), Side.REMOTE)

    assert changeset.degraded is True
    assert [c.record_id for c in changeset.changes] == ["rec2", "rec3"]
    assert changeset.max_changed_at == NOW


@pytest.mark.asyncio
async def test_other_remote_errors_propagate(db_session) -> None:
    detector = ChangeDetector(ListingRepository(db_session), _FilterRejectingClient(_records(), 503))

    with pytest.raises(AirtableApiError):
        await detector.changes_since(NOW - timedelta(hours=1), Side.REMOTE)


@pytest.mark.asyncio
async def test_local_changes_since_cursor(db_session) -> None:
    listings = ListingRepository(db_session)
    old = await listings.create_local({"city": "Dover"}, NOW - timedelta(days=2))
    fresh = await listings.create_local({"city": "Lewes"}, NOW - timedelta(minutes=5))
    await listings.update_local_fields(old, {"price": 199_000}, NOW - timedelta(minutes=1))
    gone = await listings.create_local({"city": "Seaford"}, NOW - timedelta(minutes=2))
    await listings.soft_delete(gone, NOW)
    detector = ChangeDetector(listings, None)

    changeset = await detector.changes_since(NOW - timedelta(hours=1), Side.LOCAL)

    assert [c.record_id for c in changeset.changes] == [str(fresh.id), str(old.id)]
    # solo los campos tocados después del cursor
    assert changeset.changes[1].changed_fields == ("price",)
    assert await detector.pending_local_count(NOW - timedelta(hours=1)) == 2
    assert await detector.pending_local_count(None) == 2
