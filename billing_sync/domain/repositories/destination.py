"""
Interfaz del destino de sincronización.
Define el contrato que debe cumplir cualquier implementación (Postgres, memoria).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Set

if TYPE_CHECKING:
    from billing_sync.infrastructure.external.iugu_sync.sync_config import EntityDescriptor
    from billing_sync.infrastructure.external.iugu_sync.types import NormalizedRecord


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    ERROR = "error"


class SyncDestination(ABC):
    """
    Interfaz del almacén destino.
    Define las operaciones de escritura idempotente por entidad.
    """

    @abstractmethod
    def upsert(
        self,
        descriptor: "EntityDescriptor",
        record: "NormalizedRecord",
        synced_at: datetime,
    ) -> UpsertOutcome:
        """
        Inserta o actualiza un registro por PK.

        Args:
            descriptor: Descriptor de la entidad
            record: Registro normalizado
            synced_at: Instante de escritura

        Returns:
            UpsertOutcome: INSERTED, UPDATED o UNCHANGED

        Raises:
            MissingParentError: si una FK apunta a un padre inexistente
            RecordAlreadyExistsError: si el destino indica que ya existe
            TransientDestinationError: conexión perdida / timeout
        """
        pass

    @abstractmethod
    def existing_ids(self, descriptor: "EntityDescriptor", ids: Iterable[str]) -> Set[str]:
        """
        Retorna el subconjunto de ids que ya existen en la tabla de la entidad.
        Una sola consulta por llamada.
        """
        pass

    @abstractmethod
    def insert_placeholder(
        self,
        descriptor: "EntityDescriptor",
        record: "NormalizedRecord",
        synced_at: datetime,
    ) -> bool:
        """
        Inserta un placeholder solo si el id no existe (nunca pisa una fila real).

        Returns:
            bool: True si se insertó, False si ya existía
        """
        pass

    def close(self) -> None:
        """Libera conexiones. Por defecto no hace nada."""
