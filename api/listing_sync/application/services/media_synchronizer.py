"""
Sincronización de media (fotos, planos, documentos) entre listings y Airtable.

Un attachment se considera ya sincronizado si existe su mapeo local<->remoto
y el fingerprint coincide:
- remoto: "<attachment_id>:<size>" reportado por Airtable (sin descargar)
- contenido: sha256 de los bytes (dedup cuando Airtable reasigna ids, incluido
  el eco de un archivo subido desde local)

Durante un sync nunca se borra media. La limpieza de huérfanos es una
operación aparte y en dos pasos (preview / confirm).
"""
from __future__ import annotations

import asyncio
import hashlib
import mimetypes
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.domain.entities import FieldSpec
from listing_sync.infrastructure.database.models import AttachmentModel, ListingModel
from listing_sync.infrastructure.external.airtable_sync.airtable_client import AirtableClient
from listing_sync.infrastructure.external.airtable_sync.field_registry import FieldRegistry
from listing_sync.infrastructure.external.airtable_sync.types import utc_now
from listing_sync.infrastructure.repositories.listing_repository import ListingRepository
from listing_sync.infrastructure.repositories.media_repository import MediaRepository

SUPPORTED_MIME_TYPES: dict[str, str] = {
    "image/jpeg": "images",
    "image/png": "images",
    "image/gif": "images",
    "image/webp": "images",
    "application/pdf": "documents",
}


class MediaSyncError(RuntimeError):
    """Fallo sincronizando un attachment concreto."""


@dataclass
class MediaFieldResult:
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    attachment_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add(self, other: "MediaFieldResult") -> None:
        self.synced += other.synced
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"synced": self.synced, "skipped": self.skipped, "failed": self.failed}
        if self.errors:
            data["errors"] = self.errors
        return data


def remote_fingerprint(attachment: dict[str, Any]) -> str:
    return f"{attachment.get('id')}:{attachment.get('size')}"


def content_fingerprint(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _safe_filename(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", name or "file").strip("._")
    return cleaned[:150] or "file"


class MediaStorage:
    """Archivos bajo MEDIA_ROOT, servidos desde MEDIA_PUBLIC_BASE_URL."""

    def __init__(self, root: str, public_base_url: str) -> None:
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/")

    def save(self, listing_id: int, filename: str, content: bytes) -> str:
        relative = Path(f"listing_{listing_id}") / filename
        target = self._root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return relative.as_posix()

    def delete(self, relative_path: str) -> int:
        target = self._root / relative_path
        if not target.exists():
            return 0
        size = target.stat().st_size
        target.unlink()
        return size

    def public_url(self, relative_path: str) -> str:
        return f"{self._public_base_url}/{relative_path}"


class MediaSynchronizer:
    """Reconciliación de attachments para campos media_sync."""

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[AirtableClient],
        storage: MediaStorage,
        registry: FieldRegistry,
        *,
        max_file_size: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.media_repo = MediaRepository(db)
        self.listing_repo = ListingRepository(db)
        self._client = client
        self._storage = storage
        self._registry = registry
        self._max_file_size = max_file_size
        self._clock = clock

    # ------------------------------------------------------------------
    # remoto -> local
    # ------------------------------------------------------------------

    async def sync_remote_field(
        self,
        listing: ListingModel,
        spec: FieldSpec,
        remote_value: Any,
        *,
        force: bool = False,
    ) -> MediaFieldResult:
        """
        Trae los attachments de un campo Airtable al listing.

        Returns:
            MediaFieldResult con los ids de attachments locales en orden
        """
        result = MediaFieldResult()
        attachments = remote_value or []
        if isinstance(attachments, dict):
            attachments = [attachments]
        if spec.max_files:
            attachments = attachments[:spec.max_files]

        for att in attachments:
            try:
                attachment_id, transferred = await self._sync_one_remote(listing, spec, att, force=force)
            except MediaSyncError as e:
                result.failed += 1
                result.errors.append(str(e))
                logger.warning(f"Media {spec.name} del listing {listing.id}: {e}")
                continue
            result.attachment_ids.append(attachment_id)
            if transferred:
                result.synced += 1
            else:
                result.skipped += 1
        return result

    async def _sync_one_remote(
        self, listing: ListingModel, spec: FieldSpec, att: dict[str, Any], *, force: bool
    ) -> tuple[int, bool]:
        remote_id = att.get("id")
        url = att.get("url")
        if not remote_id or not url:
            raise MediaSyncError("Attachment remoto sin id o url")

        fingerprint = remote_fingerprint(att)
        mapping = await self.media_repo.get_mapping_by_remote(listing.id, spec.name, remote_id)
        if mapping is not None and mapping.remote_fingerprint == fingerprint and not force:
            return mapping.attachment_id, False

        filename = att.get("filename") or f"{remote_id}"
        mime_type = att.get("type") or mimetypes.guess_type(filename)[0] or ""
        self._validate(filename, mime_type, att.get("size"))
        if self._client is None:
            raise MediaSyncError("Cliente Airtable no configurado")

        download = await asyncio.to_thread(self._client.download_attachment, url)
        if not download.success:
            raise MediaSyncError(f"Descarga fallida de {filename}: {download.message}")
        content: bytes = download.data or b""
        self._validate(filename, mime_type, len(content))

        now = self._clock()
        digest = content_fingerprint(content)
        existing = mapping or await self.media_repo.get_mapping_by_hash(listing.id, spec.name, digest)
        if existing is not None and existing.content_hash == digest:
            # Mismo contenido con otro id/fingerprint remoto: solo se actualiza el mapeo
            await self.media_repo.save_mapping(
                listing_id=listing.id,
                field_name=spec.name,
                attachment_id=existing.attachment_id,
                remote_attachment_id=remote_id,
                remote_fingerprint=fingerprint,
                content_hash=digest,
                source=existing.source,
                now=now,
            )
            return existing.attachment_id, False

        if mapping is not None:
            # El id remoto pasa a otro attachment; el archivo anterior se conserva
            mapping.remote_attachment_id = None
            mapping.remote_fingerprint = None

        local_copy = await self.media_repo.get_attachment_by_hash(listing.id, digest)
        if local_copy is not None:
            # Eco de un archivo subido desde local: Airtable le asignó un id nuevo
            await self.media_repo.save_mapping(
                listing_id=listing.id,
                field_name=spec.name,
                attachment_id=local_copy.id,
                remote_attachment_id=remote_id,
                remote_fingerprint=fingerprint,
                content_hash=digest,
                source="local",
                now=now,
            )
            return local_copy.id, False

        stored_name = f"{remote_id}_{_safe_filename(filename)}"
        try:
            relative_path = await asyncio.to_thread(self._storage.save, listing.id, stored_name, content)
        except OSError as e:
            raise MediaSyncError(f"No se pudo guardar {filename}: {e}") from e
        attachment = await self.media_repo.add_attachment(
            AttachmentModel(
                listing_id=listing.id,
                filename=filename,
                file_path=relative_path,
                mime_type=mime_type,
                size_bytes=len(content),
                width=att.get("width"),
                height=att.get("height"),
                content_hash=digest,
            )
        )
        await self.media_repo.save_mapping(
            listing_id=listing.id,
            field_name=spec.name,
            attachment_id=attachment.id,
            remote_attachment_id=remote_id,
            remote_fingerprint=fingerprint,
            content_hash=digest,
            source="remote",
            now=now,
        )
        logger.info(f"Media importada: {filename} -> listing {listing.id} ({len(content)} bytes)")
        return attachment.id, True

    def _validate(self, filename: str, mime_type: str, size: Any) -> None:
        if mime_type not in SUPPORTED_MIME_TYPES:
            raise MediaSyncError(f"Tipo de archivo no soportado: {filename} ({mime_type or 'desconocido'})")
        if size is None:
            return
        try:
            size = int(size)
        except (TypeError, ValueError):
            raise MediaSyncError(f"Tamaño inválido para {filename}: {size!r}") from None
        if size > self._max_file_size:
            raise MediaSyncError(f"Archivo demasiado grande: {filename} ({size} bytes)")

    # ------------------------------------------------------------------
    # local -> remoto
    # ------------------------------------------------------------------

    async def prepare_for_remote(
        self,
        listing: ListingModel,
        spec: FieldSpec,
        local_value: Any,
        remote_value: Any,
    ) -> tuple[Optional[list[dict[str, Any]]], MediaFieldResult]:
        """
        Construye el valor Airtable de un campo media a partir de los attachments locales.

        Reutiliza el id remoto si el contenido no cambió; si no, envía url + filename
        para que Airtable lo descargue. Retorna (None, ...) si no hay cambios.
        """
        result = MediaFieldResult()
        ids = local_value if isinstance(local_value, list) else ([local_value] if local_value else [])
        if spec.max_files:
            ids = ids[:spec.max_files]

        payload: list[dict[str, Any]] = []
        for attachment_id in ids:
            attachment = await self.media_repo.get_attachment(int(attachment_id))
            if attachment is None:
                result.failed += 1
                result.errors.append(f"Attachment {attachment_id} no existe")
                continue
            mapping = await self.media_repo.get_mapping_by_attachment(listing.id, spec.name, attachment.id)
            if mapping and mapping.remote_attachment_id and mapping.content_hash == attachment.content_hash:
                payload.append({"id": mapping.remote_attachment_id})
                result.skipped += 1
            else:
                payload.append({"url": self._storage.public_url(attachment.file_path), "filename": attachment.filename})
                result.synced += 1

        remote_items = remote_value or []
        if isinstance(remote_items, dict):
            remote_items = [remote_items]
        remote_ids = [a.get("id") for a in remote_items]
        if result.synced == 0 and [p.get("id") for p in payload] == remote_ids:
            return None, result
        return payload, result

    # ------------------------------------------------------------------
    # Comandos
    # ------------------------------------------------------------------

    async def sync_media_for_records(
        self,
        record_ids: Iterable[str],
        media_types: Optional[Iterable[str]] = None,
        *,
        force: bool = False,
    ) -> dict[str, dict[str, Any]]:
        """
        Re-sincroniza media remoto -> local para los listings indicados.

        record_ids acepta ids locales o record ids de Airtable.
        """
        specs = self._registry.media_specs(media_types)
        results: dict[str, dict[str, Any]] = {}
        for record_id in record_ids:
            key = str(record_id)
            listing = await self._find_listing(key)
            if listing is None or not listing.remote_record_id:
                results[key] = {"synced": 0, "skipped": 0, "failed": 0, "error": "Listing no vinculado a Airtable"}
                continue
            if self._client is None:
                results[key] = {"synced": 0, "skipped": 0, "failed": 0, "error": "Cliente Airtable no configurado"}
                continue

            remote = await asyncio.to_thread(self._client.get_record, listing.remote_record_id)
            if not remote.success:
                results[key] = {"synced": 0, "skipped": 0, "failed": len(specs), "error": remote.message}
                continue

            total = MediaFieldResult()
            values: dict[str, Any] = {}
            for spec in specs:
                field_result = await self.sync_remote_field(
                    listing, spec, remote.data.fields.get(spec.remote_field), force=force
                )
                total.add(field_result)
                if not field_result.failed and field_result.attachment_ids != (listing.fields or {}).get(spec.name):
                    values[spec.name] = field_result.attachment_ids
            if values:
                await self.listing_repo.apply_sync_values(listing, values, remote.data.last_modified, self._clock())
            results[key] = total.to_dict()
        return results

    async def _find_listing(self, record_id: str) -> Optional[ListingModel]:
        if record_id.isdigit():
            return await self.listing_repo.get(int(record_id))
        return await self.listing_repo.get_by_remote_id(record_id)

    async def cleanup_orphaned_media(self, confirm: bool = False) -> dict[str, Any]:
        """
        Attachments que ningún campo media de ningún listing referencia.

        Sin confirm solo reporta (preview); con confirm borra archivos y filas.
        """
        media_names = [s.name for s in self._registry.media_specs()]
        referenced: set[int] = set()
        for listing in await self.listing_repo.list_all():
            for name in media_names:
                value = (listing.fields or {}).get(name)
                items = value if isinstance(value, list) else ([value] if value else [])
                referenced.update(int(v) for v in items if str(v).isdigit())

        attachments = await self.media_repo.list_attachments()
        orphans = [a for a in attachments if a.id not in referenced]
        orphan_bytes = sum(a.size_bytes or 0 for a in orphans)

        if not confirm:
            return {
                "confirmed": False,
                "files_checked": len(attachments),
                "orphaned_files": len(orphans),
                "space_to_free": orphan_bytes,
            }

        space_freed = 0
        for attachment in orphans:
            space_freed += await asyncio.to_thread(self._storage.delete, attachment.file_path)
            await self.media_repo.delete_attachment(attachment)
        logger.info(f"Limpieza de media: {len(orphans)} archivo(s) eliminados, {space_freed} bytes liberados")
        return {
            "confirmed": True,
            "files_checked": len(attachments),
            "files_removed": len(orphans),
            "space_freed": space_freed,
        }

    async def get_sync_statistics(self) -> dict[str, Any]:
        synced_files = await self.media_repo.count_mapped_files()
        total_size = await self.media_repo.total_mapped_size()
        return {
            "synced_files": synced_files,
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / 1024 / 1024, 2),
        }
