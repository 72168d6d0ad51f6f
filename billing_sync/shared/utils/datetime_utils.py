"""
Utilidades para manejo de fechas y horas (UTC aware).
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Retorna la hora actual en UTC, como datetime aware."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normaliza datetime a UTC (aware).

    Un datetime naive se interpreta como UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_z(dt: datetime, *, drop_microseconds: bool = True) -> str:
    """
    Serializa datetime a ISO8601 con 'Z' (UTC).

    Iugu recibe segundos enteros; el checkpoint conserva microsegundos
    para que el watermark sea exactamente el instante de inicio de la corrida.
    """
    dt_utc = ensure_utc(dt)
    if drop_microseconds:
        dt_utc = dt_utc.replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: Optional[str]) -> Optional[datetime]:
    """
    Convierte un string ISO 8601 a datetime UTC.

    Returns:
        Optional[datetime]: datetime aware o None si hay error
    """
    if not iso_string:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(iso_string).replace("Z", "+00:00")))
    except (ValueError, TypeError):
        return None
