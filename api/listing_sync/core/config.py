"""
Configuracion central de la aplicacion.
Gestiona variables de entorno y configuraciones globales del motor de sync.
Soporta configuracion dinamica para desarrollo (ENVIRONMENT=development)
y produccion (ENVIRONMENT=production).
"""
import json
from typing import List
from pydantic_settings import BaseSettings
from pydantic import Field, computed_field


class Settings(BaseSettings):
    """
    Clase de configuracion de la aplicacion.
    Lee variables de entorno y proporciona valores por defecto.

    - Credenciales Airtable: AIRTABLE_TOKEN, AIRTABLE_BASE_ID, AIRTABLE_TABLE_NAME.
      Pueden sobreescribirse en runtime desde la tabla system_settings.
    - Politica del cliente remoto: SYNC_BATCH_SIZE, SYNC_REQUEST_DELAY_MS, SYNC_MAX_RETRIES.
    - DATABASE_URL se puede especificar completa o por componentes
    """

    # Configuracion de la aplicacion
    APP_NAME: str = Field(default="Listing Sync Engine")
    APP_VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="production")

    # Configuracion del servidor
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Base de datos - Componentes separados
    DATABASE_HOST: str = Field(default="localhost")
    DATABASE_PORT: int = Field(default=5432)
    DATABASE_USER: str = Field(default="listings_user")
    DATABASE_PASSWORD: str = Field(default="listings_pass")
    DATABASE_NAME: str = Field(default="listings_db")

    # Base de datos - URL completa (override de componentes si se proporciona)
    DATABASE_URL: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    # CORS (acepta lista JSON o "*" para todos los origenes)
    CORS_ORIGINS: str = Field(default="*")

    # Airtable (store remoto)
    AIRTABLE_TOKEN: str = Field(default="")
    AIRTABLE_BASE_ID: str = Field(default="")
    AIRTABLE_TABLE_NAME: str = Field(default="Listings")
    AIRTABLE_LAST_MOD_FIELD: str = Field(default="Last Modified")
    AIRTABLE_API_URL: str = Field(default="https://api.airtable.com/v0")
    # Si esta vacio no se valida la firma de los webhooks entrantes
    AIRTABLE_WEBHOOK_SECRET: str = Field(default="")

    # Politica de sync
    SYNC_BATCH_SIZE: int = Field(default=50)
    SYNC_REQUEST_DELAY_MS: int = Field(default=200)
    SYNC_MAX_RETRIES: int = Field(default=3)
    SYNC_RETRY_BASE_DELAY_S: float = Field(default=1.0)
    SYNC_REQUEST_TIMEOUT_S: int = Field(default=30)
    SYNC_LOCK_LEASE_SECONDS: int = Field(default=900)
    SYNC_MAX_CONSECUTIVE_FAILURES: int = Field(default=3)
    SYNC_ERROR_WINDOW_HOURS: int = Field(default=24)
    # 0 desactiva el delta sync programado
    SYNC_AUTO_INTERVAL_MINUTES: int = Field(default=0)
    SYNC_MEDIA_ENABLED: bool = Field(default=True)

    # Media
    MEDIA_ROOT: str = Field(default="media/airtable-sync")
    MEDIA_PUBLIC_BASE_URL: str = Field(default="http://localhost:8000/media")
    MEDIA_MAX_FILE_SIZE: int = Field(default=10 * 1024 * 1024)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: str = Field(default="logs/app.log")

    @computed_field
    @property
    def effective_database_url(self) -> str:
        """
        Retorna la URL de base de datos efectiva.
        Si DATABASE_URL esta definida, la usa directamente.
        Si no, construye la URL desde los componentes individuales.
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}"
            f"@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"
        )

    @computed_field
    @property
    def is_development(self) -> bool:
        """Indica si el entorno es de desarrollo."""
        return self.ENVIRONMENT.lower() == "development"

    class Config:
        """Configuracion de Pydantic."""
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignorar campos extra del .env


def get_cors_origins(cors_string: str) -> List[str]:
    """
    Parsea la configuracion de CORS.
    Acepta "*" para todos los origenes o una lista JSON.
    """
    if cors_string == "*":
        return ["*"]
    try:
        return json.loads(cors_string)
    except json.JSONDecodeError:
        return [origin.strip() for origin in cors_string.split(",")]


# Instancia global de configuracion
settings = Settings()
