"""
Integración con Airtable para la sincronización bidireccional de listings.

Objetivos de diseño:
- Cliente síncrono (requests) con throttling y reintentos acotados.
- Resultados estructurados: el orquestador decide qué es fatal y qué no.
- Clasificación de campos explícita y en código (field_registry).
"""
from .airtable_client import AirtableApiError, AirtableClient
from .connection_config import ConnectionConfig
from .field_registry import DEFAULT_LISTING_FIELDS, FieldRegistry, default_registry


__all__ = [
    "AirtableApiError",
    "AirtableClient",
    "ConnectionConfig",
    "DEFAULT_LISTING_FIELDS",
    "FieldRegistry",
    "default_registry",
]
