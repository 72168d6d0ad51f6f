"""
Paginated Fetcher: recorre una colección Iugu página por página.

- Las páginas de una pasada se piden estrictamente en secuencia, vía Governor.
- Corta en página vacía u offset >= totalItems. Si se alcanza el límite de
  seguridad MAX_PAGES_PER_WINDOW lanza PageLimitReached (ventana incompleta).
- Si la ventana excede el techo de paginación del origen (10.000 filas),
  lanza PaginationCeilingReached para que el orquestador angoste la ventana.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from loguru import logger

from billing_sync.shared.exceptions import PageLimitReached, PaginationCeilingReached
from billing_sync.shared.utils.datetime_utils import isoformat_z

from .iugu_client import IuguClient
from .retry_governor import RetryGovernor
from .sync_config import EntityDescriptor
from .types import AXIS_CREATED, AXIS_UPDATED, Page


@dataclass(frozen=True)
class Window:
    """
    Ventana de tiempo de una pasada sobre un eje (updated_at o created_at).

    end=None significa ventana abierta hasta ahora. El incremental filtra por
    updated_at, incluso al angostar; el backfill por created_at.
    """

    start: Optional[datetime]
    end: Optional[datetime] = None
    axis: str = AXIS_UPDATED

    @property
    def bounded(self) -> bool:
        return self.start is not None and self.end is not None

    def label(self) -> str:
        start = isoformat_z(self.start) if self.start else "-inf"
        end = isoformat_z(self.end) if self.end else "now"
        return f"{self.axis} [{start}, {end})"


@dataclass(frozen=True)
class FetchedPage:
    page: Page
    offset: int
    window: Window

    @property
    def next_offset(self) -> int:
        return self.page.next_cursor


def iter_pages(
    client: IuguClient,
    governor: RetryGovernor,
    descriptor: EntityDescriptor,
    window: Window,
    *,
    page_size: int,
    start_offset: int = 0,
    max_pages: int = 1000,
    stop_event: Optional[threading.Event] = None,
) -> Iterator[FetchedPage]:
    """
    Genera las páginas de una ventana a partir de `start_offset`.

    Raises:
        PaginationCeilingReached: la ventana tiene más filas de las que el origen pagina
        PageLimitReached: se leyeron `max_pages` páginas y la ventana sigue con datos
        SyncException: falla de la página tras agotar reintentos
    """
    entity = descriptor.kind.value
    offset = start_offset
    pages = 0

    while True:
        if stop_event is not None and stop_event.is_set():
            logger.info(f"{entity}: detención solicitada, no se piden más páginas (offset={offset})")
            return
        if pages >= max_pages:
            # Quedan páginas sin leer: la ventana no está completa
            raise PageLimitReached(entity, offset, max_pages)

        current = offset
        result = governor.with_retry(
            lambda: client.fetch_page(
                descriptor, window.start, window.end, current, page_size, axis=window.axis
            ),
            description=f"GET {descriptor.endpoint} start={current}",
        )
        if not result.ok:
            raise result.error

        page: Page = result.value
        pages += 1

        if (
            current == 0
            and page.total_items is not None
            and page.total_items > client.pagination_ceiling
        ):
            # Detectado en la primera página: angostar antes de escribir nada
            raise PaginationCeilingReached(entity, current, client.pagination_ceiling)

        if page.is_empty:
            return

        yield FetchedPage(page=page, offset=current, window=window)

        offset = page.next_cursor
        if page.total_items is not None and offset >= page.total_items:
            return


def split_window(window: Window, *, min_window_minutes: int) -> List[Window]:
    """
    Angosta una ventana acotada que excede el techo de paginación.

    - Más de un día: ventanas diarias.
    - Un día o menos: mitades, mientras cada mitad dure al menos `min_window_minutes`.
    - Si no se puede angostar más, retorna [] (el caller la cuenta como skipped).
    """
    if not window.bounded:
        raise ValueError("Solo se puede angostar una ventana acotada")

    start, end = window.start, window.end
    span = end - start
    one_day = timedelta(days=1)

    if span > one_day:
        windows: List[Window] = []
        cursor = start
        while cursor < end:
            nxt = min(cursor + one_day, end)
            windows.append(Window(cursor, nxt, window.axis))
            cursor = nxt
        return windows

    half = span / 2
    if half < timedelta(minutes=min_window_minutes):
        return []
    middle = start + half
    return [Window(start, middle, window.axis), Window(middle, end, window.axis)]


def backfill_windows(
    start: datetime, end: datetime, *, window_days: int, axis: str = AXIS_CREATED
) -> List[Window]:
    """Parte [start, end) en ventanas de `window_days` días."""
    if end <= start:
        return []
    step = timedelta(days=max(1, window_days))
    windows: List[Window] = []
    cursor = start
    while cursor < end:
        nxt = min(cursor + step, end)
        windows.append(Window(cursor, nxt, axis))
        cursor = nxt
    return windows
