"""
Dependency Resolver: garantiza que cada id referenciado exista en el destino
antes de escribir el registro que lo referencia.

- Verificación de presencia en batch: una consulta por entidad referenciada y por página.
- Cache por corrida de ids conocidos (reales o placeholders).
- Ids faltantes -> placeholder con pistas del registro que referencia,
  insertado solo-si-no-existe (nunca pisa una fila real).
- Las referencias del propio placeholder se resuelven antes que él
  (p.ej. el customer de una subscription placeholder).
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from loguru import logger

from billing_sync.domain.entities.entity_kind import EntityKind
from billing_sync.domain.repositories.destination import SyncDestination
from billing_sync.shared.exceptions import SyncException
from billing_sync.shared.utils.datetime_utils import utc_now

from .retry_governor import RetryGovernor
from .sync_config import EntityDescriptor
from .table_mappings import DESCRIPTORS, build_placeholder
from .types import NormalizedRecord

MAX_PLACEHOLDER_DEPTH = 4


class DependencyResolver:
    def __init__(
        self,
        destination: SyncDestination,
        governor: RetryGovernor,
        *,
        descriptors: Optional[Mapping[EntityKind, EntityDescriptor]] = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self._destination = destination
        self._governor = governor
        self._descriptors = descriptors or DESCRIPTORS
        self._clock = clock
        self._known: Dict[EntityKind, Set[str]] = defaultdict(set)
        self._lock = threading.Lock()

    def remember(self, kind: EntityKind, record_ids: Iterable[str]) -> None:
        """Marca ids como presentes en el destino (p.ej. tras un upsert exitoso)."""
        with self._lock:
            self._known[kind].update(str(i) for i in record_ids if i)

    def forget(self, kind: EntityKind, record_id: str) -> None:
        with self._lock:
            self._known[kind].discard(str(record_id))

    def ensure_exists(
        self,
        kind: EntityKind,
        ids: Iterable[str],
        hints_by_id: Optional[Mapping[str, Mapping[str, Any]]] = None,
        *,
        referenced_by: Optional[Mapping[str, str]] = None,
    ) -> Set[str]:
        """
        Garantiza que cada id exista (real o placeholder).

        Returns:
            Set[str]: ids de `kind` para los que se creó un placeholder

        Raises:
            SyncException: si la consulta o la inserción fallan tras los reintentos
        """
        created, _ = self._ensure(kind, ids, hints_by_id or {}, referenced_by or {}, depth=0)
        return created

    def resolve_page(self, descriptor: EntityDescriptor, records: List[NormalizedRecord]) -> int:
        """
        Resuelve todas las referencias de una página.

        Una consulta por entidad referenciada. Una falla aquí no aborta la página:
        el UpsertSink reintenta la referencia puntual si la FK falla.

        Returns:
            int: cantidad de placeholders creados (incluye los anidados)
        """
        total = 0
        for ref in descriptor.references:
            ids: Set[str] = set()
            hints_by_id: Dict[str, Dict[str, Any]] = {}
            referenced_by: Dict[str, str] = {}
            for record in records:
                parent_id = record.values.get(ref.column)
                if not parent_id:
                    continue
                ids.add(parent_id)
                if parent_id not in hints_by_id:
                    hints_by_id[parent_id] = ref.extract_hints(record.raw)
                    referenced_by[parent_id] = f"{descriptor.kind.value}:{record.record_id}"
            if not ids:
                continue
            try:
                _, count = self._ensure(ref.kind, ids, hints_by_id, referenced_by, depth=0)
                total += count
            except SyncException as e:
                logger.warning(
                    f"{descriptor.kind.value}: no se pudieron resolver referencias "
                    f"{ref.column} ({len(ids)} ids): {e.message}"
                )
        return total

    def resolve_reference(
        self,
        descriptor: EntityDescriptor,
        record: NormalizedRecord,
        column: Optional[str],
    ) -> int:
        """
        Segunda pasada puntual tras una violación de FK.

        Si no se sabe qué columna falló, se re-verifican todas las referencias
        del registro. El cache se invalida para esos ids (puede estar desfasado).

        Returns:
            int: cantidad de placeholders creados
        """
        refs = [descriptor.reference_for_column(column)] if column else []
        if not refs or refs[0] is None:
            refs = list(descriptor.references)

        total = 0
        for ref in refs:
            parent_id = record.values.get(ref.column)
            if not parent_id:
                continue
            self.forget(ref.kind, parent_id)
            _, count = self._ensure(
                ref.kind,
                {parent_id},
                {parent_id: ref.extract_hints(record.raw)},
                {parent_id: f"{descriptor.kind.value}:{record.record_id}"},
                depth=0,
            )
            total += count
        return total

    def _ensure(
        self,
        kind: EntityKind,
        ids: Iterable[str],
        hints_by_id: Mapping[str, Mapping[str, Any]],
        referenced_by: Mapping[str, str],
        *,
        depth: int,
    ) -> Tuple[Set[str], int]:
        descriptor = self._descriptors[kind]
        wanted = {str(i) for i in ids if i}
        with self._lock:
            unknown = wanted - self._known[kind]
        if not unknown:
            return set(), 0

        found = self._call(
            lambda: self._destination.existing_ids(descriptor, unknown),
            f"lookup {kind.value} ({len(unknown)} ids)",
        )
        self.remember(kind, found)

        created: Set[str] = set()
        nested = 0
        for record_id in sorted(unknown - set(found)):
            placeholder = build_placeholder(
                descriptor,
                record_id,
                hints_by_id.get(record_id, {}),
                referenced_by=referenced_by.get(record_id),
            )
            nested += self._ensure_placeholder_parents(descriptor, placeholder, depth)

            inserted = self._call(
                lambda: self._destination.insert_placeholder(descriptor, placeholder, self._clock()),
                f"placeholder {kind.value} {record_id}",
            )
            self.remember(kind, {record_id})
            if inserted:
                created.add(record_id)
                logger.info(
                    f"Placeholder creado: {kind.value} {record_id} "
                    f"(referenciado por {referenced_by.get(record_id, 'desconocido')})"
                )
        return created, len(created) + nested

    def _ensure_placeholder_parents(
        self, descriptor: EntityDescriptor, placeholder: NormalizedRecord, depth: int
    ) -> int:
        if not descriptor.references:
            return 0
        if depth >= MAX_PLACEHOLDER_DEPTH:
            logger.warning(
                f"Profundidad máxima de placeholders alcanzada en {descriptor.kind.value} "
                f"{placeholder.record_id}; sus referencias quedan en NULL"
            )
            for ref in descriptor.references:
                placeholder.values[ref.column] = None
            return 0

        total = 0
        for ref in descriptor.references:
            parent_id = placeholder.values.get(ref.column)
            if not parent_id:
                continue
            _, count = self._ensure(
                ref.kind,
                {parent_id},
                {},
                {parent_id: f"{descriptor.kind.value}:{placeholder.record_id}"},
                depth=depth + 1,
            )
            total += count
        return total

    def _call(self, fn: Callable[[], Any], description: str) -> Any:
        return self._governor.with_retry(fn, description=description).unwrap()
