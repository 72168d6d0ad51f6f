"""
Normalizador de timestamps de Iugu.

El API de Iugu devuelve fechas en formatos heterogéneos dentro de un mismo
tipo de entidad:

    "2025-09-13T13:49:00-03:00"   ISO 8601 con zona
    "13/09, 13:49"                dia/mes sin año
    "26 Feb 10:20 PM"             dia, mes abreviado y hora 12h sin año
    "2025-09-13"                  fecha sola

Este módulo convierte cualquiera de ellos a un instante UTC canónico o a None.
Es puro: mismo input + mismo reference_year => mismo output. No loguea; el
caller decide cómo registrar los valores rechazados.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from dateutil import parser as date_parser

from billing_sync.shared.utils.datetime_utils import ensure_utc, utc_now

MIN_VALID_YEAR = 2000
MAX_YEARS_AHEAD = 5

# Strings más cortos que esto no se mandan al parser genérico ("12" no es una fecha).
MIN_GENERIC_LENGTH = 6

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_ISO_WITH_TZ = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}(:?\d{2})?)$",
    re.IGNORECASE,
)
_DAY_MONTH_SHORT = re.compile(r"^(\d{1,2})/(\d{1,2}),\s*(\d{1,2}):(\d{2})$")
_DAY_MONTHNAME_12H = re.compile(
    r"^(\d{1,2})\s+([A-Za-z]{3})[A-Za-z]*\.?\s+(\d{1,2}):(\d{2})\s*(AM|PM)$",
    re.IGNORECASE,
)
_DATE_ONLY = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


class _NoMatch(Exception):
    """La regla no aplica; probar la siguiente."""


def _rule_iso_with_tz(raw: str, reference_year: int) -> Optional[datetime]:
    if not _ISO_WITH_TZ.match(raw):
        raise _NoMatch()
    return date_parser.isoparse(raw)


def _rule_day_month_short(raw: str, reference_year: int) -> Optional[datetime]:
    match = _DAY_MONTH_SHORT.match(raw)
    if not match:
        raise _NoMatch()
    day, month, hour, minute = (int(g) for g in match.groups())
    return datetime(reference_year, month, day, hour, minute, tzinfo=timezone.utc)


def _rule_day_monthname_12h(raw: str, reference_year: int) -> Optional[datetime]:
    match = _DAY_MONTHNAME_12H.match(raw)
    if not match:
        raise _NoMatch()
    day, month_name, hour, minute, ampm = match.groups()
    month = MONTHS.get(month_name.lower())
    if month is None:
        # Mes desconocido: que lo intente el parser genérico
        raise _NoMatch()

    hour12 = int(hour)
    if not 1 <= hour12 <= 12:
        return None
    hour24 = hour12 % 12
    if ampm.upper() == "PM":
        hour24 += 12
    return datetime(reference_year, month, int(day), hour24, int(minute), tzinfo=timezone.utc)


def _rule_date_only(raw: str, reference_year: int) -> Optional[datetime]:
    match = _DATE_ONLY.match(raw)
    if not match:
        raise _NoMatch()
    year, month, day = (int(g) for g in match.groups())
    return datetime(year, month, day, tzinfo=timezone.utc)


def _rule_generic(raw: str, reference_year: int) -> Optional[datetime]:
    if len(raw) < MIN_GENERIC_LENGTH:
        return None
    default = datetime(reference_year, 1, 1, tzinfo=timezone.utc)
    return date_parser.parse(raw, default=default)


# Orden de prioridad: la primera regla que hace match decide.
RULES: list[Callable[[str, int], Optional[datetime]]] = [
    _rule_iso_with_tz,
    _rule_day_month_short,
    _rule_day_monthname_12h,
    _rule_date_only,
    _rule_generic,
]


def _within_bounds(dt: datetime, reference_year: int) -> bool:
    return MIN_VALID_YEAR <= dt.year <= reference_year + MAX_YEARS_AHEAD


def normalize_timestamp(raw: Any, reference_year: Optional[int] = None) -> Optional[datetime]:
    """
    Convierte un timestamp de Iugu a un instante UTC canónico.

    Args:
        raw: String crudo del API (o datetime/date ya parseado)
        reference_year: Año para formatos sin año. Default: año UTC actual.

    Returns:
        Optional[datetime]: Instante UTC aware, o None si no es parseable
        o el año queda fuera del rango razonable. Nunca lanza excepción.
    """
    if reference_year is None:
        reference_year = utc_now().year

    if raw is None:
        return None

    if isinstance(raw, datetime):
        dt = ensure_utc(raw)
        return dt if _within_bounds(dt, reference_year) else None

    if isinstance(raw, date):
        dt = datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)
        return dt if _within_bounds(dt, reference_year) else None

    if not isinstance(raw, str):
        return None

    text = raw.strip()
    if not text:
        return None

    for rule in RULES:
        try:
            result = rule(text, reference_year)
        except _NoMatch:
            continue
        except (ValueError, OverflowError, TypeError):
            # Match sintáctico con valores imposibles (31/02, 25:00, ...)
            return None

        if result is None:
            return None
        result = ensure_utc(result)
        return result if _within_bounds(result, reference_year) else None

    return None
