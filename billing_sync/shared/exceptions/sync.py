"""
Excepciones del motor de sincronización Iugu -> Postgres.

Taxonomía:
- Fallas remotas transitorias (timeout, 5xx): el Governor reintenta.
- Rate limit (429): no es falla, se aplica cool-down y se reanuda.
- Errores de origen no recuperables (4xx): se devuelven al caller.
- Violación referencial: el UpsertSink crea placeholders y reintenta una vez.
- Falla sistémica: aborta la corrida preservando el último checkpoint.
"""
from typing import Any, Optional

from billing_sync.shared.exceptions.base import SyncException


class SyncConfigError(SyncException):
    """Error de configuración del pipeline."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFIG_ERROR",
            details={"field": field} if field else None
        )


class RemoteCallError(SyncException):
    """Base para errores de llamadas remotas (origen o destino)."""

    transient = False


class TransientRemoteError(RemoteCallError):
    """Timeout, conexión reseteada o 5xx. Se reintenta."""

    transient = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(
            message=message,
            error_code="TRANSIENT_REMOTE_ERROR",
            details={"status_code": status_code} if status_code else None
        )
        self.status_code = status_code


class RateLimitedError(RemoteCallError):
    """El origen respondió 429 (too many requests)."""

    def __init__(self, message: str, retry_after_s: Optional[float] = None):
        super().__init__(
            message=message,
            error_code="RATE_LIMITED",
            details={"retry_after_s": retry_after_s}
        )
        self.retry_after_s = retry_after_s


class SourceApiError(RemoteCallError):
    """Error no recuperable del API de origen (config/auth mal, 4xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(
            message=message,
            error_code="SOURCE_API_ERROR",
            details={"status_code": status_code}
        )
        self.status_code = status_code


class PaginationCeilingReached(RemoteCallError):
    """
    El origen no pagina más allá de cierto offset (10.000 filas en Iugu).

    El caller debe angostar la ventana de tiempo en lugar de fallar.
    """

    def __init__(self, entity: str, offset: int, ceiling: int):
        super().__init__(
            message=f"Techo de paginación alcanzado para {entity} (offset={offset}, techo={ceiling})",
            error_code="PAGINATION_CEILING",
            details={"entity": entity, "offset": offset, "ceiling": ceiling}
        )
        self.entity = entity
        self.offset = offset
        self.ceiling = ceiling


class PageLimitReached(SyncException):
    """
    Se alcanzó el límite de seguridad de páginas por ventana.

    La ventana queda incompleta: el caller guarda el progreso y no avanza la marca de agua.
    """

    def __init__(self, entity: str, offset: int, max_pages: int):
        super().__init__(
            message=f"Límite de {max_pages} páginas alcanzado para {entity} (offset={offset})",
            error_code="PAGE_LIMIT",
            details={"entity": entity, "offset": offset, "max_pages": max_pages}
        )
        self.entity = entity
        self.offset = offset
        self.max_pages = max_pages


class DestinationError(RemoteCallError):
    """Error de escritura/lectura en el destino."""

    def __init__(self, message: str, error_code: str = "DESTINATION_ERROR", details=None):
        super().__init__(message=message, error_code=error_code, details=details)


class TransientDestinationError(DestinationError):
    """Conexión perdida / timeout contra Postgres."""

    transient = True

    def __init__(self, message: str):
        super().__init__(message=message, error_code="TRANSIENT_DESTINATION_ERROR")


class MissingParentError(DestinationError):
    """Violación de FK: la entidad referenciada aún no existe en el destino."""

    def __init__(self, entity: str, record_id: Any, column: Optional[str], parent_id: Optional[str]):
        super().__init__(
            message=f"{entity} {record_id}: referencia faltante {column}={parent_id}",
            error_code="MISSING_PARENT",
            details={"entity": entity, "id": str(record_id), "column": column, "parent_id": parent_id}
        )
        self.entity = entity
        self.record_id = record_id
        self.column = column
        self.parent_id = parent_id


class RecordAlreadyExistsError(DestinationError):
    """El destino indica que el registro ya existe (no-op exitoso)."""

    def __init__(self, entity: str, record_id: Any):
        super().__init__(
            message=f"{entity} {record_id} ya existe",
            error_code="ALREADY_EXISTS",
            details={"entity": entity, "id": str(record_id)}
        )


class SystemicSyncError(SyncException):
    """Umbral de errores consecutivos cruzado o checkpoint inutilizable."""

    def __init__(self, message: str, details=None):
        super().__init__(message=message, error_code="SYSTEMIC_FAILURE", details=details)
