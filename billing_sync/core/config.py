"""
Configuracion central del sync Iugu -> Postgres.
Gestiona variables de entorno (o .env) y expone helpers derivados.

No hay instancia global: el CLI construye SyncSettings y lo pasa
explicitamente al orquestador (build_from_settings).
"""
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings

from billing_sync.domain.entities.entity_kind import EntityKind
from billing_sync.shared.exceptions import SyncConfigError
from billing_sync.infrastructure.external.iugu_sync.retry_governor import (
    EXPONENTIAL,
    LINEAR,
    RetryPolicy,
)


class SyncSettings(BaseSettings):
    """
    Clase de configuracion del sync.
    Lee variables de entorno y proporciona valores por defecto.

    Minimo requerido para correr:
    - IUGU_API_TOKEN
    - DATABASE_URL (postgresql://... o postgres://...)
    """

    # Iugu
    IUGU_API_TOKEN: str = Field(default="")
    IUGU_API_BASE_URL: str = Field(default="https://api.iugu.com/v1")
    IUGU_AUTH_SCHEME: str = Field(default="basic")  # basic | bearer
    REQUEST_TIMEOUT_S: float = Field(default=30.0)

    # Destino
    DATABASE_URL: str = Field(default="")

    # Entidades y paginacion
    SYNC_ENTITIES: str = Field(default="")  # CSV; vacio = todas
    PAGE_SIZE: int = Field(default=100)
    MAX_PAGES_PER_WINDOW: int = Field(default=1000)
    PAGINATION_CEILING: int = Field(default=10000)
    MIN_WINDOW_MINUTES: int = Field(default=60)
    BACKFILL_WINDOW_DAYS: int = Field(default=30)

    # Pausas (throttling)
    PAUSE_BETWEEN_PAGES_S: float = Field(default=1.0)
    PAUSE_BETWEEN_RECORDS_S: float = Field(default=0.0)

    # Reintentos / rate limit
    MAX_RETRIES: int = Field(default=5)
    RETRY_BASE_DELAY_S: float = Field(default=2.0)
    RETRY_STRATEGY: str = Field(default=LINEAR)  # linear | exponential
    RETRY_MAX_DELAY_S: float = Field(default=60.0)
    RATE_LIMIT_COOLDOWN_S: float = Field(default=30.0)
    MAX_RATE_LIMIT_WAITS: int = Field(default=10)
    MAX_CONSECUTIVE_ERRORS: int = Field(default=10)

    # Checkpoint
    CHECKPOINT_DIR: str = Field(default="sync_checkpoints")
    CHECKPOINT_INTERVAL_PAGES: int = Field(default=5)
    DEFAULT_LOOKBACK_MINUTES: int = Field(default=60)

    # Concurrencia
    PARALLEL_PASSES: bool = Field(default=False)
    MAX_WORKERS: int = Field(default=4)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: str = Field(default="logs/iugu_sync.log")

    @property
    def entity_kinds(self) -> List[EntityKind]:
        """Entidades a sincronizar (SYNC_ENTITIES) en orden del enum."""
        return parse_entity_list(self.SYNC_ENTITIES)

    def retry_policy(self) -> RetryPolicy:
        strategy = self.RETRY_STRATEGY.strip().lower()
        if strategy not in (LINEAR, EXPONENTIAL):
            raise SyncConfigError(
                f"RETRY_STRATEGY invalida: {self.RETRY_STRATEGY} (usar linear o exponential)",
                field="RETRY_STRATEGY",
            )
        return RetryPolicy(
            max_attempts=max(1, self.MAX_RETRIES),
            base_delay_s=self.RETRY_BASE_DELAY_S,
            strategy=strategy,
            max_delay_s=self.RETRY_MAX_DELAY_S,
            rate_limit_cooldown_s=self.RATE_LIMIT_COOLDOWN_S,
            max_rate_limit_waits=self.MAX_RATE_LIMIT_WAITS,
        )

    def validate_for_run(self) -> None:
        """Valida la configuracion critica antes de tocar red o base."""
        if not self.IUGU_API_TOKEN:
            raise SyncConfigError("Falta variable de entorno obligatoria: IUGU_API_TOKEN", field="IUGU_API_TOKEN")
        if not self.DATABASE_URL:
            raise SyncConfigError("Falta variable de entorno obligatoria: DATABASE_URL", field="DATABASE_URL")
        if "postgres" not in self.DATABASE_URL:
            raise SyncConfigError(
                f"DATABASE_URL debe apuntar a Postgres. Valor actual: {self.DATABASE_URL}",
                field="DATABASE_URL",
            )
        if self.PAGE_SIZE <= 0 or self.PAGE_SIZE > self.PAGINATION_CEILING:
            raise SyncConfigError(f"PAGE_SIZE fuera de rango: {self.PAGE_SIZE}", field="PAGE_SIZE")
        self.retry_policy()
        parse_entity_list(self.SYNC_ENTITIES)

    class Config:
        """Configuracion de Pydantic."""
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignorar campos extra del .env


def parse_entity_list(raw: str) -> List[EntityKind]:
    """
    Parsea una lista CSV de entidades ("invoices,customers").
    Vacio o "all" -> todas.
    """
    if not raw or raw.strip().lower() == "all":
        return list(EntityKind)
    selected = set()
    for item in raw.split(","):
        if not item.strip():
            continue
        try:
            selected.add(EntityKind.parse(item))
        except ValueError as e:
            raise SyncConfigError(str(e), field="SYNC_ENTITIES") from e
    return [k for k in EntityKind if k in selected]
