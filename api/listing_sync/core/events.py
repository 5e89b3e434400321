"""
Manejadores de eventos de inicio y cierre de la aplicacion.
"""
from datetime import timedelta
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from loguru import logger

from listing_sync.application.use_cases.sync_orchestrator import SyncOrchestrator
from listing_sync.core.config import settings
from listing_sync.infrastructure.database.session import AsyncSessionLocal, close_db, init_db
from listing_sync.infrastructure.external.airtable_sync.types import utc_now
from listing_sync.shared.exceptions.sync import SyncAlreadyInProgressException

SCHEDULED_SYNC_JOB_ID = "listing_delta_sync"


def startup_handler(app: FastAPI) -> Callable:
    """
    Manejador de eventos de inicio de la aplicacion.

    Args:
        app: Instancia de FastAPI

    Returns:
        Callable: Funcion asincrona de inicio
    """
    async def startup() -> None:
        """Inicializa recursos al inicio de la aplicacion."""
        try:
            logger.info(f"Iniciando {settings.APP_NAME} v{settings.APP_VERSION}")
            logger.info(f"Entorno: {settings.ENVIRONMENT}")

            _validate_config()

            await init_db()
            logger.info("Base de datos inicializada")

            logger.add(
                settings.LOG_FILE,
                rotation="500 MB",
                retention="10 days",
                level=settings.LOG_LEVEL
            )

            app.state.scheduler = _start_scheduler()

            logger.success("Aplicacion iniciada correctamente")
            _print_available_urls()

        except Exception as e:
            logger.error(f"Error durante startup: {e}")
            logger.exception("Detalle del error:")
            raise

    return startup


def _validate_config() -> None:
    """Valida que la configuracion critica este presente."""
    warnings = []

    if not settings.AIRTABLE_TOKEN:
        warnings.append("AIRTABLE_TOKEN no configurado - los jobs terminaran en config_invalid")
    if not settings.AIRTABLE_BASE_ID:
        warnings.append("AIRTABLE_BASE_ID no configurado")
    if not settings.AIRTABLE_WEBHOOK_SECRET:
        warnings.append("AIRTABLE_WEBHOOK_SECRET vacio - los webhooks se aceptan sin firma")

    for warning in warnings:
        logger.warning(f"CONFIG: {warning}")


async def run_scheduled_delta_sync() -> None:
    """Delta sync periodico con solapamiento de dos intervalos."""
    since = utc_now() - timedelta(minutes=settings.SYNC_AUTO_INTERVAL_MINUTES * 2)
    async with AsyncSessionLocal() as db:
        try:
            job = await SyncOrchestrator(db).run_delta_sync(since=since)
            logger.info(f"Delta sync programado {job.id}: {job.status.value} {job.stats.to_dict()}")
        except SyncAlreadyInProgressException:
            logger.info("Delta sync programado omitido: ya hay un job en curso")
        except Exception as e:
            logger.error(f"Error en delta sync programado: {e}")


def _start_scheduler():
    if settings.SYNC_AUTO_INTERVAL_MINUTES <= 0:
        logger.info("Sync automatico deshabilitado (SYNC_AUTO_INTERVAL_MINUTES=0)")
        return None

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_scheduled_delta_sync,
        trigger=IntervalTrigger(minutes=settings.SYNC_AUTO_INTERVAL_MINUTES),
        id=SCHEDULED_SYNC_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Delta sync programado cada {settings.SYNC_AUTO_INTERVAL_MINUTES} min")
    return scheduler


def _print_available_urls() -> None:
    """Imprime las URLs disponibles de la aplicacion."""
    access_host = "localhost" if settings.HOST == "0.0.0.0" else settings.HOST
    base_url = f"http://{access_host}:{settings.PORT}"

    logger.opt(colors=True).info("<bold><green>" + "=" * 80 + "</green></bold>")
    logger.opt(colors=True).info(f"<cyan>  Swagger UI:  {base_url}/docs</cyan>")
    logger.opt(colors=True).info(f"<cyan>  Health:      {base_url}/health</cyan>")
    logger.opt(colors=True).info(f"<cyan>  Webhooks:    {base_url}/api/v1/webhooks/airtable</cyan>")
    logger.opt(colors=True).info("<bold><green>" + "=" * 80 + "</green></bold>")


def shutdown_handler(app: FastAPI) -> Callable:
    """
    Manejador de eventos de cierre de la aplicacion.

    Args:
        app: Instancia de FastAPI

    Returns:
        Callable: Funcion asincrona de cierre
    """
    async def shutdown() -> None:
        """Libera recursos al cerrar la aplicacion."""
        logger.info("Cerrando aplicacion...")

        scheduler = getattr(app.state, "scheduler", None)
        if scheduler:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler detenido")

        await close_db()
        logger.info("Conexiones de base de datos cerradas")

        logger.success("Aplicacion cerrada correctamente")

    return shutdown
