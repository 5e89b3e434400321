"""
CLI: sync Airtable <-> listings locales.

Uso recomendado:
  - Ejecutar como job (cron/systemd timer) en lugar de desde el request/response del API.

Variables de entorno requeridas:
  - AIRTABLE_TOKEN
  - AIRTABLE_BASE_ID
  - AIRTABLE_TABLE_NAME
  - DATABASE_URL (o DATABASE_HOST/DATABASE_NAME/...)

Ejecución:
  python scripts/listing_sync.py full
  python scripts/listing_sync.py full --force-full --direction remote_to_local
  python scripts/listing_sync.py delta --since 2026-01-01T00:00:00Z
  python scripts/listing_sync.py status
  python scripts/listing_sync.py cleanup-media --confirm
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger
from dotenv import load_dotenv

# Permite ejecutar este script desde cualquier cwd sin configurar PYTHONPATH.
_API_ROOT = Path(__file__).resolve().parents[1]
if str(_API_ROOT) not in sys.path:
    sys.path.insert(0, str(_API_ROOT))

load_dotenv(_API_ROOT / ".env", override=False)
load_dotenv(_API_ROOT.parent / ".env", override=False)

from listing_sync.application.use_cases.integration_use_cases import IntegrationUseCases
from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.domain.entities import JobStatus, SyncDirection
from listing_sync.infrastructure.database.session import AsyncSessionLocal, close_db, init_db
from listing_sync.infrastructure.external.airtable_sync.types import parse_airtable_datetime
from listing_sync.shared.exceptions.sync import SyncAlreadyInProgressException


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sincronización de listings con Airtable")
    sub = parser.add_subparsers(dest="command", required=True)

    full = sub.add_parser("full", help="Sync completo (reanuda desde los cursores)")
    full.add_argument("--force-full", action="store_true", help="Reinicia cursores y re-transfiere media")
    full.add_argument(
        "--direction",
        choices=[d.value for d in SyncDirection],
        default=SyncDirection.BOTH.value,
    )

    delta = sub.add_parser("delta", help="Sync de cambios desde --since (por defecto la última hora)")
    delta.add_argument("--since", default=None, help="Timestamp ISO-8601")
    delta.add_argument(
        "--direction",
        choices=[d.value for d in SyncDirection],
        default=SyncDirection.BOTH.value,
    )

    sub.add_parser("status", help="Muestra el estado del sync")

    cleanup = sub.add_parser("cleanup-media", help="Attachments huérfanos (preview por defecto)")
    cleanup.add_argument("--confirm", action="store_true", help="Borra los archivos huérfanos")
    return parser


async def run(args: argparse.Namespace) -> int:
    await init_db()
    try:
        async with AsyncSessionLocal() as db:
            orchestrator = SyncOrchestrator(db)

            if args.command in ("full", "delta"):
                direction = SyncDirection(args.direction)
                try:
                    if args.command == "full":
                        job = await orchestrator.run_full_sync(direction=direction, force_full=args.force_full)
                    else:
                        since = parse_airtable_datetime(args.since) if args.since else None
                        if args.since and since is None:
                            raise SystemExit(f"--since inválido: {args.since}")
                        job = await orchestrator.run_delta_sync(since=since, direction=direction)
                except SyncAlreadyInProgressException as e:
                    logger.warning(f"{e.message}: {e.details}")
                    return 2
                print(json.dumps(job.to_dict(), indent=2, ensure_ascii=False))
                return 0 if job.status is JobStatus.COMPLETED else 1

            use_cases = IntegrationUseCases(db, orchestrator)
            if args.command == "status":
                status = await use_cases.get_sync_status()
                print(status.model_dump_json(indent=2))
            else:
                result = await use_cases.cleanup_orphaned_media(confirm=args.confirm)
                print(json.dumps(result, indent=2))
            return 0
    finally:
        await close_db()


def main() -> int:
    args = build_parser().parse_args()
    logger.info(f"Iniciando comando '{args.command}'...")
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
