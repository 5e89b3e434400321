"""
Servicios de aplicacion.

Logica de sincronizacion reutilizable por el orquestador, el sync de
un solo registro y los webhooks.
"""
from listing_sync.application.services.change_detector import ChangeDetector
from listing_sync.application.services.media_synchronizer import MediaStorage, MediaSynchronizer
from listing_sync.application.services.record_applier import RecordApplier
from listing_sync.application.services.record_mapper import RecordMapper

__all__ = [
    "ChangeDetector",
    "MediaStorage",
    "MediaSynchronizer",
    "RecordApplier",
    "RecordMapper",
]
