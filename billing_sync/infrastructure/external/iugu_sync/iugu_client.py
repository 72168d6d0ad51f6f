"""
Cliente mínimo de Iugu REST API (sin SDKs externos).

Requisitos cubiertos:
- requests
- paginación por offset (`start` + `limit`)
- filtro por ventana sobre created_at (backfill) o updated_at (incremental): `<eje>_from`/`<eje>_to`
- clasificación de errores para el Governor (429, 5xx, techo de paginación, 4xx)

Este cliente NO reintenta: cada llamada es un intento. Los reintentos y el
cool-down de rate limit viven en el RetryGovernor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import requests
from loguru import logger

from billing_sync.shared.exceptions import (
    PaginationCeilingReached,
    RateLimitedError,
    SourceApiError,
    TransientRemoteError,
)
from billing_sync.shared.utils.datetime_utils import isoformat_z

from .sync_config import EntityDescriptor
from .types import AXIS_UPDATED, Page

DEFAULT_BASE_URL = "https://api.iugu.com/v1"
DEFAULT_PAGINATION_CEILING = 10_000

AUTH_BASIC = "basic"
AUTH_BEARER = "bearer"


@dataclass(frozen=True)
class IuguCredentials:
    token: str
    auth_scheme: str = AUTH_BASIC


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def build_page_params(
    *,
    window_start: Optional[datetime],
    window_end: Optional[datetime],
    cursor: int,
    limit: int,
    axis: str = AXIS_UPDATED,
) -> Dict[str, Any]:
    """
    Arma el querystring de una página.

    - Incremental (eje updated_at): updated_at_from y, si la ventana fue angostada, updated_at_to
    - Backfill (eje created_at): created_at_from / created_at_to
    Orden estable por created_at asc para que el offset sea reanudable.
    """
    params: Dict[str, Any] = {
        "limit": limit,
        "start": cursor,
        "sortBy": "created_at",
        "sortType": "asc",
    }
    if window_start is not None:
        params[f"{axis}_from"] = isoformat_z(window_start)
    if window_end is not None:
        params[f"{axis}_to"] = isoformat_z(window_end)
    return params


class IuguClient:
    """
    Cliente HTTP de Iugu. Una página por llamada.

    Importante:
    - No hace cast de tipos: eso se decide en el mapeo (table_mappings).
    - Ausencia de `items` se interpreta como página vacía.
    """

    def __init__(
        self,
        credentials: IuguCredentials,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 30,
        pagination_ceiling: int = DEFAULT_PAGINATION_CEILING,
    ) -> None:
        self._creds = credentials
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._ceiling = pagination_ceiling
        self._session = session or requests.Session()

    @property
    def pagination_ceiling(self) -> int:
        return self._ceiling

    def fetch_page(
        self,
        descriptor: EntityDescriptor,
        window_start: Optional[datetime],
        window_end: Optional[datetime],
        cursor: int,
        limit: int,
        axis: str = AXIS_UPDATED,
    ) -> Page:
        """
        Trae una página de la colección de la entidad.

        Raises:
            RateLimitedError: 429
            TransientRemoteError: 5xx, timeout o error de conexión
            PaginationCeilingReached: offset más allá del techo del origen
            SourceApiError: otros 4xx (no recuperables)
        """
        entity = descriptor.kind.value
        if cursor + limit > self._ceiling:
            raise PaginationCeilingReached(entity, cursor, self._ceiling)

        url = f"{self._base_url}{descriptor.endpoint}"
        params = build_page_params(
            window_start=window_start, window_end=window_end, cursor=cursor, limit=limit, axis=axis
        )
        payload = self._request_json(url, params=params, entity=entity, cursor=cursor)

        items = payload.get("items") or []
        total = payload.get("totalItems")
        try:
            total_items = int(total) if total is not None else None
        except (TypeError, ValueError):
            total_items = None

        return Page(records=list(items), next_cursor=cursor + len(items), total_items=total_items)

    def _auth_kwargs(self) -> Dict[str, Any]:
        if self._creds.auth_scheme == AUTH_BEARER:
            return {"headers": {"Authorization": f"Bearer {self._creds.token}", "Accept": "application/json"}}
        # Iugu: Basic auth con el token como usuario y password vacío
        return {"auth": (self._creds.token, ""), "headers": {"Accept": "application/json"}}

    def _request_json(
        self, url: str, *, params: Dict[str, Any], entity: str, cursor: int
    ) -> Dict[str, Any]:
        """
        Un GET y su clasificación de errores.

        Estrategia:
        - 2xx: retorna el JSON
        - 429: RateLimitedError (respeta Retry-After si existe)
        - 5xx / timeout / conexión: TransientRemoteError
        - 400 con start >= techo: PaginationCeilingReached
        - otros 4xx: SourceApiError (config/auth mal)
        """
        try:
            resp = self._session.get(
                url, params=params, timeout=self._timeout_s, **self._auth_kwargs()
            )
        except requests.Timeout as e:
            raise TransientRemoteError(f"Timeout consultando {url}: {e}") from e
        except requests.ConnectionError as e:
            raise TransientRemoteError(f"Error de conexión consultando {url}: {e}") from e

        status = resp.status_code
        if 200 <= status < 300:
            try:
                data = resp.json()
            except ValueError as e:
                raise TransientRemoteError(f"Respuesta no-JSON de {url} (status {status})", status) from e
            if not isinstance(data, dict):
                logger.warning(f"{entity}: respuesta inesperada (no es objeto), se trata como página vacía")
                return {}
            return data

        if status == 429:
            raise RateLimitedError(
                f"Iugu rate limit en {entity}",
                retry_after_s=_parse_retry_after(resp.headers.get("Retry-After")),
            )

        if 500 <= status < 600:
            raise TransientRemoteError(f"Iugu error {status} en {entity}: {resp.text[:500]}", status)

        if status == 400 and cursor >= self._ceiling:
            raise PaginationCeilingReached(entity, cursor, self._ceiling)

        raise SourceApiError(f"Iugu request falló {status} en {entity}: {resp.text[:500]}", status)
