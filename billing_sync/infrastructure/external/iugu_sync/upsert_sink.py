"""
Upsert Sink: escritura idempotente de un registro normalizado.

Reglas:
- Cada escritura pasa por el RetryGovernor (conexión perdida / timeout).
- Violación de FK: una pasada del Dependency Resolver para esa referencia y
  exactamente un reintento. Una segunda falla es un error genuino.
- "Ya existe" se clasifica como no-op exitoso (UNCHANGED).
- Cada falla de registro cuenta para el presupuesto de errores consecutivos.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from loguru import logger

from billing_sync.domain.entities.entity_kind import EntityKind
from billing_sync.domain.repositories.destination import SyncDestination, UpsertOutcome
from billing_sync.shared.exceptions import (
    MissingParentError,
    RecordAlreadyExistsError,
    SyncException,
)
from billing_sync.shared.utils.datetime_utils import utc_now

from .dependency_resolver import DependencyResolver
from .retry_governor import CallResult, ConsecutiveErrorBudget, RetryGovernor
from .sync_config import EntityDescriptor
from .table_mappings import DESCRIPTORS
from .types import NormalizedRecord


@dataclass(frozen=True)
class UpsertResult:
    outcome: UpsertOutcome
    record_id: str
    placeholders: int = 0
    error: Optional[SyncException] = None

    @property
    def ok(self) -> bool:
        return self.outcome != UpsertOutcome.ERROR


class UpsertSink:
    def __init__(
        self,
        destination: SyncDestination,
        governor: RetryGovernor,
        resolver: DependencyResolver,
        *,
        budget: Optional[ConsecutiveErrorBudget] = None,
        descriptors: Optional[Mapping[EntityKind, EntityDescriptor]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._destination = destination
        self._governor = governor
        self._resolver = resolver
        self._budget = budget
        self._descriptors = descriptors or DESCRIPTORS
        self._clock = clock

    def upsert(
        self,
        kind: EntityKind,
        record: NormalizedRecord,
        *,
        synced_at: Optional[datetime] = None,
    ) -> UpsertResult:
        """
        Escribe un registro y clasifica el resultado.

        Raises:
            SystemicSyncError: si esta falla cruza el umbral de errores consecutivos
        """
        descriptor = self._descriptors[kind]
        synced_at = synced_at or self._clock()
        placeholders = 0

        call = self._write(descriptor, record, synced_at)
        if isinstance(call.error, MissingParentError):
            logger.info(
                f"{kind.value} {record.record_id}: falta padre "
                f"{call.error.column}={call.error.parent_id}, resolviendo y reintentando"
            )
            try:
                placeholders = self._resolver.resolve_reference(descriptor, record, call.error.column)
            except SyncException as e:
                call = CallResult(error=e, attempts=call.attempts)
            else:
                call = self._write(descriptor, record, synced_at)

        if isinstance(call.error, RecordAlreadyExistsError):
            call = CallResult(value=UpsertOutcome.UNCHANGED, attempts=call.attempts)

        if call.ok:
            self._resolver.remember(kind, {record.record_id})
            if self._budget is not None:
                self._budget.record_success()
            return UpsertResult(call.value, record.record_id, placeholders=placeholders)

        logger.error(f"{kind.value} {record.record_id}: upsert falló: {call.error.message}")
        if self._budget is not None:
            self._budget.record_failure(f"{kind.value} {record.record_id}: {call.error.message}")
        return UpsertResult(
            UpsertOutcome.ERROR, record.record_id, placeholders=placeholders, error=call.error
        )

    def _write(
        self, descriptor: EntityDescriptor, record: NormalizedRecord, synced_at: datetime
    ) -> CallResult[UpsertOutcome]:
        return self._governor.with_retry(
            lambda: self._destination.upsert(descriptor, record, synced_at),
            description=f"upsert {descriptor.kind.value} {record.record_id}",
        )
