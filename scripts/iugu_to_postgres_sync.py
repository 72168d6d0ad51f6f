"""
CLI: Iugu -> Postgres (one-way sync).

Uso recomendado:
  - Ejecutar como job (cron/systemd timer).
  - Un Ctrl+C (o SIGTERM) termina la página en curso, guarda el progreso y sale.

Variables de entorno requeridas (o .env):
  - IUGU_API_TOKEN
  - DATABASE_URL (debe ser postgresql://... o postgres://...)

Ejecución:
  python scripts/iugu_to_postgres_sync.py
  python scripts/iugu_to_postgres_sync.py --entities invoices,customers --parallel
  python scripts/iugu_to_postgres_sync.py --mode backfill --from 2025-08-01 --to 2025-09-01
  python scripts/iugu_to_postgres_sync.py --schema-only
  python scripts/iugu_to_postgres_sync.py --init-schema

Códigos de salida:
  0 = corrida terminada (success / partial / interrupted)
  1 = falla sistémica (checkpoint preservado)
  2 = error de configuración
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from loguru import logger

# Permite ejecutar este script desde cualquier cwd sin configurar PYTHONPATH.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

# .env del repo (no pisa variables ya definidas en el entorno)
load_dotenv(_REPO_ROOT / ".env", override=False)

from billing_sync.core.config import SyncSettings, parse_entity_list
from billing_sync.core.logging_config import configure_logging
from billing_sync.infrastructure.external.iugu_sync.pg_repository import read_schema_sql
from billing_sync.infrastructure.external.iugu_sync.sync_service import (
    RUN_BACKFILL,
    RUN_INCREMENTAL,
    build_from_settings,
)
from billing_sync.shared.exceptions import SyncConfigError, SyncException, SystemicSyncError
from billing_sync.shared.utils.date_normalizer import normalize_timestamp

EXIT_OK = 0
EXIT_SYSTEMIC = 1
EXIT_CONFIG = 2


def _parse_date_arg(value: str) -> datetime:
    parsed = normalize_timestamp(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"Fecha inválida: {value!r} (usar YYYY-MM-DD o ISO 8601)")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sincronización incremental Iugu -> PostgreSQL")
    parser.add_argument(
        "--mode",
        choices=[RUN_INCREMENTAL, RUN_BACKFILL],
        default=RUN_INCREMENTAL,
        help="incremental (desde el watermark) o backfill (rango --from/--to).",
    )
    parser.add_argument(
        "--entities",
        default=None,
        help="Lista CSV de entidades (invoices,customers,...). Default: SYNC_ENTITIES o todas.",
    )
    parser.add_argument("--from", dest="date_from", type=_parse_date_arg, help="Inicio del backfill (inclusive).")
    parser.add_argument("--to", dest="date_to", type=_parse_date_arg, help="Fin del backfill (exclusive).")
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Sincroniza en paralelo las entidades independientes de una misma capa.",
    )
    parser.add_argument(
        "--schema-only",
        action="store_true",
        help="Solo imprime el DDL recomendado (no ejecuta sync).",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Aplica el DDL en DATABASE_URL antes de sincronizar.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Logging DEBUG.")
    return parser


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handler(signum, _frame) -> None:
        if stop_event.is_set():
            logger.warning("Segunda señal recibida; esperando a que termine la página en curso...")
            return
        logger.warning(f"Señal {signal.Signals(signum).name} recibida: terminando la página en curso")
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handler)


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.schema_only:
        print(read_schema_sql())
        return EXIT_OK

    settings = SyncSettings()
    configure_logging("DEBUG" if args.verbose else settings.LOG_LEVEL, settings.LOG_FILE or None)

    if args.parallel:
        settings.PARALLEL_PASSES = True

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    try:
        kinds = parse_entity_list(args.entities) if args.entities is not None else settings.entity_kinds
        if args.mode == RUN_BACKFILL and (args.date_from is None or args.date_to is None):
            raise SyncConfigError("--mode backfill requiere --from y --to", field="--from/--to")
        if args.mode == RUN_BACKFILL and args.date_to <= args.date_from:
            raise SyncConfigError("--to debe ser posterior a --from", field="--from/--to")
        service, destination, _client = build_from_settings(settings, stop_event=stop_event)
    except SyncConfigError as e:
        logger.error(f"Configuración inválida: {e.message}")
        return EXIT_CONFIG

    try:
        if args.init_schema:
            destination.ensure_schema()

        logger.info(f"Iniciando Iugu -> Postgres sync ({args.mode})...")
        if args.mode == RUN_BACKFILL:
            summary = service.run_backfill(args.date_from, args.date_to, kinds)
        else:
            summary = service.run_incremental(kinds)

        totals = summary.totals()
        logger.info(
            f"Sync {summary.status}: fetched={totals.fetched}, inserted={totals.inserted}, "
            f"updated={totals.updated}, unchanged={totals.unchanged}, errored={totals.errored}, "
            f"placeholders={totals.placeholders}"
        )
        return EXIT_OK
    except SystemicSyncError as e:
        logger.error(f"Falla sistémica, abortando (checkpoint preservado): {e.message}")
        return EXIT_SYSTEMIC
    except SyncException as e:
        logger.error(f"No se pudo completar la corrida: {e.message}")
        return EXIT_SYSTEMIC
    finally:
        destination.close()


if __name__ == "__main__":
    raise SystemExit(main())
