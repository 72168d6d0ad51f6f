"""
Servicio de sincronización Iugu -> Postgres (orquestador).

Diseño (resumen):
- Carga el checkpoint (watermark por entidad + progreso de pasadas en curso)
- Recorre las entidades por capas del grafo de dependencias
  (opcionalmente en paralelo dentro de una capa)
- Incremental filtra por updated_at (también las ventanas angostadas por el
  techo de paginación); el backfill filtra por created_at
- Por página: mapea, resuelve dependencias (placeholders), UPSERT por registro
- Guarda progreso cada N páginas; el watermark solo avanza (al inicio de la
  corrida) cuando la pasada drenó todas sus páginas

Estrategia de idempotencia:
- UPSERT con merge no destructivo y detección de "sin cambios".
- Reanudar desde el offset guardado re-lee como mucho unas páginas (seguro).
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from billing_sync.domain.entities.checkpoint import Checkpoint, PassProgress
from billing_sync.domain.entities.entity_kind import EntityKind, dependency_levels
from billing_sync.domain.repositories.destination import SyncDestination, UpsertOutcome
from billing_sync.shared.exceptions import (
    PaginationCeilingReached,
    SyncException,
    SystemicSyncError,
)
from billing_sync.shared.utils.datetime_utils import isoformat_z, utc_now

from .checkpoint_store import CheckpointStore, checkpoint_path_for
from .dependency_resolver import DependencyResolver
from .iugu_client import IuguClient, IuguCredentials
from .paginated_fetcher import FetchedPage, Window, backfill_windows, iter_pages, split_window
from .pg_repository import PostgresDestination
from .retry_governor import ConsecutiveErrorBudget, RetryGovernor
from .sync_config import EntityDescriptor
from .table_mappings import DESCRIPTORS, map_source_record
from .types import AXIS_CREATED, AXIS_UPDATED
from .upsert_sink import UpsertResult, UpsertSink

RUN_INCREMENTAL = "incremental"
RUN_BACKFILL = "backfill"

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_INTERRUPTED = "interrupted"
STATUS_ABORTED = "aborted"


@dataclass(frozen=True)
class SyncOptions:
    """Parámetros de la corrida (se construyen desde SyncSettings)."""

    page_size: int = 100
    max_pages_per_window: int = 1000
    pause_between_pages_s: float = 1.0
    pause_between_records_s: float = 0.0
    checkpoint_interval_pages: int = 5
    min_window_minutes: int = 60
    backfill_window_days: int = 30
    parallel_passes: bool = False
    max_workers: int = 4
    max_consecutive_errors: int = 10


@dataclass
class PassStats:
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    errored: int = 0
    placeholders: int = 0
    pages: int = 0
    completed: bool = False
    error: Optional[str] = None

    def record(self, result: UpsertResult) -> None:
        self.placeholders += result.placeholders
        if result.outcome == UpsertOutcome.INSERTED:
            self.inserted += 1
        elif result.outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        elif result.outcome == UpsertOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.errored += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunSummary:
    run_type: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: str = "running"
    passes: Dict[EntityKind, PassStats] = field(default_factory=dict)

    def stats_for(self, kind: EntityKind) -> PassStats:
        return self.passes.setdefault(kind, PassStats())

    def totals(self) -> PassStats:
        total = PassStats()
        for stats in self.passes.values():
            for name in ("fetched", "inserted", "updated", "unchanged", "skipped", "errored", "placeholders", "pages"):
                setattr(total, name, getattr(total, name) + getattr(stats, name))
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runType": self.run_type,
            "status": self.status,
            "startedAt": isoformat_z(self.started_at, drop_microseconds=False),
            "finishedAt": isoformat_z(self.finished_at, drop_microseconds=False) if self.finished_at else None,
            "entities": {k.value: s.to_dict() for k, s in self.passes.items()},
        }


class RunHalt(threading.Event):
    """
    Señal de detención de una corrida.

    Se activa por la señal externa (SIGINT/SIGTERM) o por un aborto interno
    (falla sistémica en otra pasada).
    """

    def __init__(self, external: Optional[threading.Event] = None) -> None:
        super().__init__()
        self._external = external

    @property
    def requested_externally(self) -> bool:
        return self._external is not None and self._external.is_set()

    def is_set(self) -> bool:
        return super().is_set() or self.requested_externally


@dataclass
class _RunContext:
    run_type: str
    store: CheckpointStore
    checkpoint: Checkpoint
    summary: RunSummary
    sink: UpsertSink
    resolver: DependencyResolver
    halt: RunHalt
    reference_year: int
    lock: threading.Lock = field(default_factory=threading.Lock)


class BillingSyncService:
    """
    Orquestador del pipeline para todas las entidades.

    Las dependencias se inyectan (no hay singletons): cliente de origen,
    destino, governor y directorio de checkpoints.
    """

    def __init__(
        self,
        *,
        source: IuguClient,
        destination: SyncDestination,
        governor: RetryGovernor,
        checkpoint_dir: str,
        options: Optional[SyncOptions] = None,
        default_lookback_minutes: int = 60,
        stop_event: Optional[threading.Event] = None,
        descriptors: Optional[Dict[EntityKind, EntityDescriptor]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._destination = destination
        self._governor = governor
        self._checkpoint_dir = checkpoint_dir
        self._options = options or SyncOptions()
        self._default_lookback_minutes = default_lookback_minutes
        self._stop_event = stop_event
        self._descriptors = descriptors or DESCRIPTORS
        self._sleep = sleep
        self._clock = clock

    def checkpoint_store(self, run_type: str) -> CheckpointStore:
        return CheckpointStore(
            checkpoint_path_for(self._checkpoint_dir, run_type),
            default_lookback_minutes=self._default_lookback_minutes,
        )

    # ------------------------------------------------------------------ #
    # Corridas
    # ------------------------------------------------------------------ #

    def run_incremental(self, kinds: Optional[Iterable[EntityKind]] = None) -> RunSummary:
        """
        Corrida incremental: cada entidad desde su watermark hasta ahora.

        Raises:
            SystemicSyncError: umbral de errores cruzado o checkpoint inutilizable
        """
        ctx = self._start_run(RUN_INCREMENTAL, kinds)
        checkpoint = ctx.checkpoint
        commit_instants: List[datetime] = []

        def run_pass(kind: EntityKind) -> None:
            stats = ctx.summary.stats_for(kind)
            progress = checkpoint.progress.get(kind.value)
            if progress is not None:
                commit_at = progress.run_started_at
                queue, offset = self._resume_queue(progress, AXIS_UPDATED)
                logger.info(
                    f"{kind.value}: reanudando desde offset {offset} en {queue[0].label()} "
                    f"(watermark a comprometer: {isoformat_z(commit_at)})"
                )
            else:
                commit_at = ctx.summary.started_at
                queue, offset = [Window(checkpoint.watermark_for(kind.value), None, AXIS_UPDATED)], 0
                logger.info(f"{kind.value}: incremental desde {queue[0].label()}")

            if not self._drain(ctx, kind, queue, offset, commit_at, stats):
                return

            with ctx.lock:
                checkpoint.advance_watermark(kind.value, commit_at)
                checkpoint.progress.pop(kind.value, None)
                checkpoint.counts_by_entity[kind.value] = stats.fetched
                commit_instants.append(commit_at)
                ctx.store.save(checkpoint)

        self._run_passes(ctx, run_pass)

        if ctx.summary.status == STATUS_SUCCESS and commit_instants:
            with ctx.lock:
                checkpoint.advance_global_watermark(min(commit_instants))
        return self._finish_run(ctx)

    def run_backfill(
        self,
        start: datetime,
        end: datetime,
        kinds: Optional[Iterable[EntityKind]] = None,
    ) -> RunSummary:
        """
        Carga histórica acotada [start, end) en ventanas de BACKFILL_WINDOW_DAYS.

        Reanudable por entidad (completedEntities + progreso). Al terminar todo,
        el checkpoint de backfill se elimina. No toca el watermark incremental.
        """
        if end <= start:
            raise ValueError(f"Rango de backfill vacío: {start} >= {end}")

        ctx = self._start_run(RUN_BACKFILL, kinds)
        checkpoint = ctx.checkpoint

        def run_pass(kind: EntityKind) -> None:
            stats = ctx.summary.stats_for(kind)
            if kind.value in checkpoint.completed_entities:
                logger.info(f"{kind.value}: ya completado en un backfill anterior, se omite")
                stats.completed = True
                return

            progress = checkpoint.progress.get(kind.value)
            if progress is not None and self._progress_matches(progress, start, end):
                queue, offset = self._resume_queue(progress, AXIS_CREATED)
                logger.info(f"{kind.value}: reanudando backfill desde offset {offset} en {queue[0].label()}")
            else:
                if progress is not None:
                    logger.warning(f"{kind.value}: progreso guardado de otro rango, se descarta")
                queue = backfill_windows(start, end, window_days=self._options.backfill_window_days)
                offset = 0
                logger.info(
                    f"{kind.value}: backfill {Window(start, end, AXIS_CREATED).label()} en {len(queue)} ventanas"
                )

            if not self._drain(ctx, kind, queue, offset, ctx.summary.started_at, stats):
                return

            with ctx.lock:
                checkpoint.progress.pop(kind.value, None)
                checkpoint.completed_entities.append(kind.value)
                checkpoint.counts_by_entity[kind.value] = stats.fetched
                ctx.store.save(checkpoint)

        self._run_passes(ctx, run_pass)
        summary = self._finish_run(ctx)

        if summary.status == STATUS_SUCCESS:
            ctx.store.clear()
            logger.info("Backfill completo: checkpoint de backfill eliminado")
        return summary

    # ------------------------------------------------------------------ #
    # Ciclo de vida de la corrida
    # ------------------------------------------------------------------ #

    def _start_run(self, run_type: str, kinds: Optional[Iterable[EntityKind]]) -> _RunContext:
        started_at = self._clock()
        store = self.checkpoint_store(run_type)
        checkpoint = store.load()
        if store.last_load_failed and not store.save(checkpoint):
            raise SystemicSyncError(
                f"Checkpoint {store.path} ilegible y no se puede escribir",
                details={"path": str(store.path)},
            )

        selected = list(kinds) if kinds is not None else list(EntityKind)
        summary = RunSummary(run_type=run_type, started_at=started_at)
        for kind in selected:
            summary.stats_for(kind)

        budget = ConsecutiveErrorBudget(self._options.max_consecutive_errors)
        resolver = DependencyResolver(
            self._destination, self._governor, descriptors=self._descriptors, clock=self._clock
        )
        sink = UpsertSink(
            self._destination,
            self._governor,
            resolver,
            budget=budget,
            descriptors=self._descriptors,
            clock=self._clock,
        )
        logger.info(
            f"Iniciando corrida {run_type}: entidades={[k.value for k in selected]}, "
            f"watermark global={isoformat_z(checkpoint.watermark)}"
        )
        return _RunContext(
            run_type=run_type,
            store=store,
            checkpoint=checkpoint,
            summary=summary,
            sink=sink,
            resolver=resolver,
            halt=RunHalt(self._stop_event),
            reference_year=started_at.year,
        )

    def _run_passes(self, ctx: _RunContext, run_pass: Callable[[EntityKind], None]) -> None:
        """Ejecuta las pasadas por capas; una capa termina antes de empezar la siguiente."""
        summary = ctx.summary
        try:
            for level in dependency_levels(summary.passes.keys()):
                if ctx.halt.is_set():
                    break
                if self._options.parallel_passes and len(level) > 1:
                    self._run_level_parallel(ctx, level, run_pass)
                else:
                    for kind in level:
                        if ctx.halt.is_set():
                            break
                        run_pass(kind)
        except SystemicSyncError as e:
            ctx.halt.set()
            summary.status = STATUS_ABORTED
            logger.error(f"Corrida {ctx.run_type} abortada: {e.message}")
            self._finish_run(ctx)
            raise

        if ctx.halt.requested_externally:
            summary.status = STATUS_INTERRUPTED
        elif all(stats.completed for stats in summary.passes.values()):
            summary.status = STATUS_SUCCESS
        else:
            summary.status = STATUS_PARTIAL

    def _run_level_parallel(
        self, ctx: _RunContext, level: List[EntityKind], run_pass: Callable[[EntityKind], None]
    ) -> None:
        systemic: Optional[SystemicSyncError] = None
        workers = max(1, min(self._options.max_workers, len(level)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as executor:
            futures = {executor.submit(run_pass, kind): kind for kind in level}
            for future in as_completed(futures):
                try:
                    future.result()
                except SystemicSyncError as e:
                    # Cortar las demás pasadas en su próxima página
                    ctx.halt.set()
                    systemic = systemic or e
        if systemic is not None:
            raise systemic

    def _finish_run(self, ctx: _RunContext) -> RunSummary:
        summary = ctx.summary
        summary.finished_at = self._clock()
        with ctx.lock:
            ctx.checkpoint.last_run_at = summary.finished_at
            ctx.checkpoint.last_run_summary = summary.to_dict()
            ctx.store.save(ctx.checkpoint)

        for kind, stats in summary.passes.items():
            logger.info(
                f"{kind.value}: fetched={stats.fetched} inserted={stats.inserted} "
                f"updated={stats.updated} unchanged={stats.unchanged} skipped={stats.skipped} "
                f"errored={stats.errored} placeholders={stats.placeholders}"
            )
        logger.info(f"Corrida {ctx.run_type} finalizada con estado '{summary.status}'")
        return summary

    # ------------------------------------------------------------------ #
    # Pasada de una entidad
    # ------------------------------------------------------------------ #

    def _drain(
        self,
        ctx: _RunContext,
        kind: EntityKind,
        queue: List[Window],
        offset: int,
        commit_at: datetime,
        stats: PassStats,
    ) -> bool:
        """
        Recorre todas las ventanas de la cola.

        Returns:
            bool: True si la pasada drenó todas sus páginas (se puede comprometer el watermark)

        Raises:
            SystemicSyncError: propagado tras guardar el progreso
        """
        descriptor = self._descriptors[kind]
        pages_since_save = 0

        while queue:
            window = queue[0]
            try:
                for fetched in iter_pages(
                    self._source,
                    self._governor,
                    descriptor,
                    window,
                    page_size=self._options.page_size,
                    start_offset=offset,
                    max_pages=self._options.max_pages_per_window,
                    stop_event=ctx.halt,
                ):
                    self._process_page(ctx, descriptor, fetched, stats)
                    offset = fetched.next_offset
                    pages_since_save += 1
                    if pages_since_save >= self._options.checkpoint_interval_pages:
                        self._save_progress(ctx, kind, queue, offset, commit_at)
                        pages_since_save = 0
                    if self._options.pause_between_pages_s > 0 and not ctx.halt.is_set():
                        self._sleep(self._options.pause_between_pages_s)
            except PaginationCeilingReached:
                bounded = window if window.bounded else Window(window.start, commit_at, window.axis)
                parts = split_window(bounded, min_window_minutes=self._options.min_window_minutes)
                if not parts:
                    stats.skipped += 1
                    logger.error(
                        f"{kind.value}: ventana {bounded.label()} excede el techo de paginación y no "
                        f"se puede angostar más; se omite"
                    )
                    queue.pop(0)
                else:
                    logger.warning(
                        f"{kind.value}: techo de paginación en {window.label()}, "
                        f"angostando en {len(parts)} ventanas"
                    )
                    queue[0:1] = parts
                offset = 0
                continue
            except SystemicSyncError:
                self._save_progress(ctx, kind, queue, offset, commit_at)
                raise
            except SyncException as e:
                stats.error = e.message
                logger.error(
                    f"{kind.value}: falla de página en {window.label()} offset={offset}: {e.message}. "
                    f"Se conserva el watermark anterior"
                )
                self._save_progress(ctx, kind, queue, offset, commit_at)
                return False

            if ctx.halt.is_set():
                self._save_progress(ctx, kind, queue, offset, commit_at)
                logger.info(f"{kind.value}: interrumpido, progreso guardado en offset {offset}")
                return False

            queue.pop(0)
            offset = 0

        stats.completed = True
        return True

    def _process_page(
        self,
        ctx: _RunContext,
        descriptor: EntityDescriptor,
        fetched: FetchedPage,
        stats: PassStats,
    ) -> None:
        kind = descriptor.kind
        stats.pages += 1
        stats.fetched += len(fetched.page.records)

        records = []
        for payload in fetched.page.records:
            record = map_source_record(payload, descriptor=descriptor, reference_year=ctx.reference_year)
            if record is None:
                stats.skipped += 1
                continue
            records.append(record)

        stats.placeholders += ctx.resolver.resolve_page(descriptor, records)

        synced_at = self._clock()
        for record in records:
            stats.record(ctx.sink.upsert(kind, record, synced_at=synced_at))
            if self._options.pause_between_records_s > 0:
                self._sleep(self._options.pause_between_records_s)

        logger.debug(
            f"{kind.value}: página offset={fetched.offset} ({len(fetched.page.records)} registros) "
            f"total={fetched.page.total_items}"
        )

    def _save_progress(
        self,
        ctx: _RunContext,
        kind: EntityKind,
        queue: List[Window],
        offset: int,
        commit_at: datetime,
    ) -> None:
        if not queue:
            return
        window = queue[0]
        pending_until = queue[-1].end if len(queue) > 1 else None
        with ctx.lock:
            ctx.checkpoint.progress[kind.value] = PassProgress(
                window_start=window.start,
                window_end=window.end,
                offset=offset,
                run_started_at=commit_at,
                pending_until=pending_until,
            )
            ctx.store.save(ctx.checkpoint)

    def _resume_queue(self, progress: PassProgress, axis: str) -> Tuple[List[Window], int]:
        queue = [Window(progress.window_start, progress.window_end, axis)]
        if progress.window_end is not None and progress.pending_until is not None:
            queue.extend(
                backfill_windows(
                    progress.window_end,
                    progress.pending_until,
                    window_days=self._options.backfill_window_days,
                    axis=axis,
                )
            )
        return queue, progress.offset

    @staticmethod
    def _progress_matches(progress: PassProgress, start: datetime, end: datetime) -> bool:
        if progress.window_start < start:
            return False
        last_end = progress.pending_until or progress.window_end
        return last_end == end


def build_from_settings(
    settings,
    *,
    stop_event: Optional[threading.Event] = None,
) -> Tuple[BillingSyncService, PostgresDestination, IuguClient]:
    """
    Constructor "oficial" del pipeline a partir de SyncSettings.

    La configuración se valida antes de abrir cualquier conexión.
    """
    settings.validate_for_run()

    client = IuguClient(
        IuguCredentials(token=settings.IUGU_API_TOKEN, auth_scheme=settings.IUGU_AUTH_SCHEME.lower()),
        base_url=settings.IUGU_API_BASE_URL,
        timeout_s=settings.REQUEST_TIMEOUT_S,
        pagination_ceiling=settings.PAGINATION_CEILING,
    )
    destination = PostgresDestination(settings.DATABASE_URL)
    governor = RetryGovernor(settings.retry_policy())
    options = SyncOptions(
        page_size=settings.PAGE_SIZE,
        max_pages_per_window=settings.MAX_PAGES_PER_WINDOW,
        pause_between_pages_s=settings.PAUSE_BETWEEN_PAGES_S,
        pause_between_records_s=settings.PAUSE_BETWEEN_RECORDS_S,
        checkpoint_interval_pages=max(1, settings.CHECKPOINT_INTERVAL_PAGES),
        min_window_minutes=settings.MIN_WINDOW_MINUTES,
        backfill_window_days=settings.BACKFILL_WINDOW_DAYS,
        parallel_passes=settings.PARALLEL_PASSES,
        max_workers=settings.MAX_WORKERS,
        max_consecutive_errors=settings.MAX_CONSECUTIVE_ERRORS,
    )
    service = BillingSyncService(
        source=client,
        destination=destination,
        governor=governor,
        checkpoint_dir=settings.CHECKPOINT_DIR,
        options=options,
        default_lookback_minutes=settings.DEFAULT_LOOKBACK_MINUTES,
        stop_event=stop_event,
    )
    return service, destination, client
