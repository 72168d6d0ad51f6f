"""
Configuración de fixtures para pytest.

Dobles de prueba del pipeline:
- InMemoryDestination: replica la semántica del UPSERT de Postgres
  (FKs, merge con COALESCE, "sin cambios", placeholders solo-si-no-existe)
- ScriptedSource: origen Iugu en memoria, paginado por offset
- FakeSession / FakeResponse: dobles de requests.Session para el cliente HTTP
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pytest

from billing_sync.domain.entities.entity_kind import EntityKind
from billing_sync.domain.repositories.destination import SyncDestination, UpsertOutcome
from billing_sync.infrastructure.external.iugu_sync.retry_governor import RetryGovernor, RetryPolicy
from billing_sync.infrastructure.external.iugu_sync.table_mappings import DESCRIPTORS
from billing_sync.infrastructure.external.iugu_sync.types import AXIS_UPDATED, Page
from billing_sync.shared.exceptions import MissingParentError, PaginationCeilingReached
from billing_sync.shared.utils.date_normalizer import normalize_timestamp

RUN_START = datetime(2025, 9, 1, 12, 0, 0, tzinfo=timezone.utc)


def _without_synced_at(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if k != "synced_at"}


def _in_window(value: Any, start: Optional[datetime], end: Optional[datetime]) -> bool:
    stamp = normalize_timestamp(value, 2025)
    if stamp is None:
        return False
    return (start is None or start <= stamp) and (end is None or stamp < end)


class InMemoryDestination(SyncDestination):
    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            d.target_table: {} for d in DESCRIPTORS.values()
        }
        self.lookups: List[tuple] = []
        self.placeholder_inserts: List[tuple] = []
        self.upsert_errors: List[Exception] = []
        self.fail_upserts_for: Optional[Callable[[Any], Optional[Exception]]] = None
        self._lock = threading.Lock()

    def rows(self, kind: EntityKind) -> Dict[str, Dict[str, Any]]:
        return self.tables[DESCRIPTORS[kind].target_table]

    def snapshot(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Estado comparable (sin synced_at)."""
        return {
            table: {rid: _without_synced_at(row) for rid, row in rows.items()}
            for table, rows in self.tables.items()
        }

    def _check_references(self, descriptor, record_id: str, row: Dict[str, Any]) -> None:
        for ref in descriptor.references:
            parent_id = row.get(ref.column)
            if parent_id and parent_id not in self.tables[DESCRIPTORS[ref.kind].target_table]:
                raise MissingParentError(descriptor.kind.value, record_id, ref.column, parent_id)

    def upsert(self, descriptor, record, synced_at) -> UpsertOutcome:
        if self.fail_upserts_for is not None:
            error = self.fail_upserts_for(record)
            if error is not None:
                self.upsert_errors.append(error)
                raise error

        incoming = record.as_row(synced_at)
        with self._lock:
            table = self.tables[descriptor.target_table]
            current = table.get(record.record_id)
            if current is None:
                self._check_references(descriptor, record.record_id, incoming)
                table[record.record_id] = incoming
                return UpsertOutcome.INSERTED

            merged = dict(current)
            for column in descriptor.data_columns:
                if incoming.get(column) is not None:
                    merged[column] = incoming[column]
            merged["raw_json"] = incoming["raw_json"]
            merged["is_placeholder"] = incoming["is_placeholder"]

            if _without_synced_at(merged) == _without_synced_at(current):
                return UpsertOutcome.UNCHANGED

            self._check_references(descriptor, record.record_id, merged)
            merged["synced_at"] = incoming["synced_at"]
            table[record.record_id] = merged
            return UpsertOutcome.UPDATED

    def existing_ids(self, descriptor, ids: Iterable[str]) -> Set[str]:
        wanted = set(ids)
        with self._lock:
            self.lookups.append((descriptor.kind, frozenset(wanted)))
            return wanted & set(self.tables[descriptor.target_table])

    def insert_placeholder(self, descriptor, record, synced_at) -> bool:
        with self._lock:
            table = self.tables[descriptor.target_table]
            if record.record_id in table:
                return False
            row = record.as_row(synced_at)
            self._check_references(descriptor, record.record_id, row)
            table[record.record_id] = row
            self.placeholder_inserts.append((descriptor.kind, record.record_id))
            return True


class ScriptedSource:
    """
    Origen Iugu en memoria con la misma interfaz que IuguClient.fetch_page.

    - Filtra por el campo del eje de la ventana (created_at o updated_at):
      start <= valor < end; un extremo None no acota
    - Sin extremos devuelve todo
    """

    def __init__(
        self,
        data: Optional[Dict[EntityKind, List[Dict[str, Any]]]] = None,
        *,
        pagination_ceiling: int = 10_000,
    ) -> None:
        self.data = {k: list(v) for k, v in (data or {}).items()}
        self.pagination_ceiling = pagination_ceiling
        self.calls: List[tuple] = []
        self.errors: Dict[tuple, List[Exception]] = {}
        self.after_fetch: Optional[Callable[[EntityKind, int], None]] = None

    def fail(self, kind: EntityKind, cursor: int, *errors: Exception) -> None:
        self.errors.setdefault((kind, cursor), []).extend(errors)

    def fetch_page(self, descriptor, window_start, window_end, cursor, limit, axis=AXIS_UPDATED) -> Page:
        kind = descriptor.kind
        self.calls.append((kind, window_start, window_end, cursor, axis))
        queued = self.errors.get((kind, cursor))
        if queued:
            raise queued.pop(0)
        if cursor + limit > self.pagination_ceiling:
            raise PaginationCeilingReached(kind.value, cursor, self.pagination_ceiling)

        items = self.data.get(kind, [])
        if window_start is not None or window_end is not None:
            items = [p for p in items if _in_window(p.get(axis), window_start, window_end)]
        chunk = items[cursor:cursor + limit]
        page = Page(records=[dict(p) for p in chunk], next_cursor=cursor + len(chunk), total_items=len(items))
        if self.after_fetch is not None:
            self.after_fetch(kind, cursor)
        return page


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, headers=None, text: str = "") -> None:
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        self.text = text

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("no JSON")
        return self._json


class FakeSession:
    """Devuelve (o lanza) las respuestas encoladas, en orden."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, params=None, timeout=None, **kwargs):
        self.requests.append({"url": url, "params": dict(params or {}), "timeout": timeout, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_invoice(i: int, *, day: int = 15, **overrides) -> Dict[str, Any]:
    payload = {
        "id": f"inv_{i:04d}",
        "status": "paid",
        "customer_id": f"cus_{i % 10}",
        "customer_name": f"Cliente {i % 10}",
        "email": f"cliente{i % 10}@example.com",
        "total_cents": 1000 + i,
        "created_at": f"2025-08-{day:02d}T10:{i % 60:02d}:00-03:00",
        "updated_at": f"2025-08-{day:02d}T11:{i % 60:02d}:00-03:00",
        "paid_at": f"{day:02d}/08, 10:30",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def destination() -> InMemoryDestination:
    return InMemoryDestination()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def governor(sleeps) -> RetryGovernor:
    return RetryGovernor(RetryPolicy(max_attempts=3, base_delay_s=2.0), sleep=sleeps.append)
