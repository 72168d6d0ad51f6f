"""
Tipos y utilidades puras para el pipeline Iugu -> Postgres.

Se mantienen libres de I/O para poder testearlos fácilmente.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from billing_sync.domain.entities.entity_kind import EntityKind
from billing_sync.shared.utils.datetime_utils import ensure_utc

SourceRecord = Dict[str, Any]
Transform = Callable[[Any], Any]
HintsExtractor = Callable[[Mapping[str, Any]], Dict[str, Any]]

# Campo temporal por el que se filtra una ventana
AXIS_CREATED = "created_at"
AXIS_UPDATED = "updated_at"


@dataclass(frozen=True)
class FieldMapping:
    """
    Define el mapeo de un campo Iugu a una columna Postgres.

    - source_field: nombre del campo en el payload de Iugu
    - column: nombre de la columna en Postgres
    - transform: función opcional para transformar el valor antes de persistir
    - required: si True y falta, se loguea y la columna queda en NULL
    """

    source_field: str
    column: str
    transform: Optional[Transform] = None
    required: bool = False


@dataclass(frozen=True)
class MoneyField:
    """
    Monto en unidades menores (centavos).

    Iugu a veces manda `total_cents` (int) y a veces solo `total` ("R$ 1.234,56").
    Se prefiere el campo en centavos; el decimal es fallback.
    """

    column: str
    cents_field: str
    decimal_field: Optional[str] = None


@dataclass(frozen=True)
class ForeignReference:
    """
    Referencia por id a otra entidad (FK en Postgres).

    - kind: entidad referenciada
    - column: columna FK en la tabla del registro que referencia
    - source_fields: campos del payload, en orden de preferencia
    - hints: extrae datos del registro que referencia para armar un placeholder
    """

    kind: EntityKind
    column: str
    source_fields: Tuple[str, ...]
    hints: Optional[HintsExtractor] = None

    def extract_id(self, payload: Mapping[str, Any]) -> Optional[str]:
        value = first_present(payload, *self.source_fields)
        return str(value) if value not in (None, "") else None

    def extract_hints(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        if not self.hints:
            return {}
        return {k: v for k, v in self.hints(payload).items() if v is not None}


@dataclass
class NormalizedRecord:
    """
    Registro mapeado al esquema destino de su entidad.

    - values: columnas tipadas (timestamps UTC o None, montos en centavos)
    - raw: payload original de Iugu, guardado tal cual en raw_json
    - is_placeholder: True si es un stub creado solo para satisfacer una FK
    """

    kind: EntityKind
    record_id: str
    values: Dict[str, Any]
    raw: Dict[str, Any]
    is_placeholder: bool = False

    def as_row(self, synced_at: datetime) -> Dict[str, Any]:
        row: Dict[str, Any] = {"id": self.record_id}
        row.update(self.values)
        row["raw_json"] = self.raw
        row["is_placeholder"] = self.is_placeholder
        row["synced_at"] = ensure_utc(synced_at)
        return row


@dataclass(frozen=True)
class Page:
    """Una página de la colección remota."""

    records: List[SourceRecord] = field(default_factory=list)
    next_cursor: int = 0
    total_items: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.records


def first_present(payload: Mapping[str, Any], *fields: str) -> Any:
    """Primer valor no vacío entre los campos dados."""
    for name in fields:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


_NON_NUMERIC = re.compile(r"[^\d,.\-]")


def parse_minor_units(value: Any) -> Optional[int]:
    """
    Convierte un valor en centavos (int o string numérica) a int.

    >>> parse_minor_units("10050")
    10050
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(Decimal(str(value)).to_integral_value(rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError, OverflowError):
        return None


def parse_decimal_to_minor_units(value: Any) -> Optional[int]:
    """
    Convierte un monto decimal a centavos.

    Acepta números y strings con formato brasilero o internacional:
    "R$ 1.234,56" -> 123456, "1234.56" -> 123456, 10 -> 1000.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        text = str(value)
    else:
        text = _NON_NUMERIC.sub("", str(value))
        if "," in text and "." in text:
            if text.rfind(",") > text.rfind("."):
                text = text.replace(".", "").replace(",", ".")
            else:
                text = text.replace(",", "")
        elif "," in text:
            text = text.replace(",", ".")
    try:
        amount = Decimal(text) * 100
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError, OverflowError):
        return None


def to_bool(value: Any) -> Optional[bool]:
    """Booleans de Iugu: True/False, "true"/"false" o ausentes."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "sim")


def to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
