"""
Configuración del sync por entidad (mapeo Iugu -> Postgres).

Un EntityDescriptor define todo lo que el pipeline genérico necesita saber
de una entidad:
- endpoint de origen
- tabla destino
- mapeos de campos, timestamps y montos
- referencias a otras entidades (FKs) y cómo armar placeholders

Este módulo no realiza I/O: solo define configuración.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from billing_sync.domain.entities.entity_kind import EntityKind

from .types import FieldMapping, ForeignReference, MoneyField

TECHNICAL_COLUMNS = ("raw_json", "is_placeholder", "synced_at")


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Config de una colección Iugu -> una tabla Postgres.

    NOTA sobre el PK:
    - Por defecto el PK es el campo `id` de Iugu.
    - Planes usan `identifier` como PK porque las assinaturas referencian
      al plano por identifier, no por id.
    """

    kind: EntityKind
    endpoint: str
    target_table: str
    field_mappings: List[FieldMapping] = field(default_factory=list)
    timestamp_fields: Dict[str, str] = field(default_factory=dict)
    money_fields: List[MoneyField] = field(default_factory=list)
    references: List[ForeignReference] = field(default_factory=list)
    id_field: str = "id"
    placeholder_defaults: Dict[str, Any] = field(default_factory=dict)

    @property
    def data_columns(self) -> List[str]:
        """Columnas de negocio (sin PK ni técnicas), en orden estable."""
        columns: List[str] = []
        for mapping in self.field_mappings:
            columns.append(mapping.column)
        for ref in self.references:
            columns.append(ref.column)
        columns.extend(self.timestamp_fields.values())
        for money in self.money_fields:
            columns.append(money.column)
        # dict.fromkeys preserva orden y elimina duplicados
        return list(dict.fromkeys(columns))

    @property
    def all_columns(self) -> List[str]:
        return ["id", *self.data_columns, *TECHNICAL_COLUMNS]

    def reference_for_column(self, column: Optional[str]) -> Optional[ForeignReference]:
        for ref in self.references:
            if ref.column == column:
                return ref
        return None
