"""
Checkpoint: snapshot persistido del progreso de sincronización.

Se serializa como un documento JSON por tipo de corrida:

    {
      "lastSync": "2025-09-01T12:00:00.123456Z",
      "countsByEntity": {"invoices": 240},
      "lastRun": {...},
      "watermarks": {"invoices": "..."},
      "progress": {"invoices": {"windowStart": ..., "windowEnd": ..., "offset": 200, "runStartedAt": ...}},
      "completedEntities": ["customers"]
    }
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from billing_sync.shared.utils.datetime_utils import isoformat_z, parse_iso


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return isoformat_z(dt, drop_microseconds=False) if dt else None


def _section(data: Dict[str, Any], key: str, expected: type) -> Any:
    """Sección opcional del JSON; un tipo inesperado es un checkpoint corrupto."""
    value = data.get(key)
    if value is None:
        return expected()
    if not isinstance(value, expected):
        raise ValueError(f"{key} inválido: se esperaba {expected.__name__}, llegó {type(value).__name__}")
    return value


@dataclass
class PassProgress:
    """
    Posición de reanudación de una pasada en curso.

    run_started_at es el watermark que se comprometerá cuando la pasada
    termine, aunque la reanudación ocurra en una corrida posterior.
    pending_until marca el fin del tramo que aún falta recorrer después de
    la ventana actual (ventanas angostadas o de backfill).
    """
    window_start: datetime
    window_end: Optional[datetime]
    offset: int
    run_started_at: datetime
    pending_until: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "windowStart": _iso(self.window_start),
            "windowEnd": _iso(self.window_end),
            "offset": self.offset,
            "runStartedAt": _iso(self.run_started_at),
            "pendingUntil": _iso(self.pending_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["PassProgress"]:
        window_start = parse_iso(data.get("windowStart"))
        run_started_at = parse_iso(data.get("runStartedAt"))
        if window_start is None or run_started_at is None:
            return None
        return cls(
            window_start=window_start,
            window_end=parse_iso(data.get("windowEnd")),
            offset=int(data.get("offset") or 0),
            run_started_at=run_started_at,
            pending_until=parse_iso(data.get("pendingUntil")),
        )


@dataclass
class Checkpoint:
    """
    Estado persistido de una corrida.

    Invariante: watermark (y watermarks por entidad) nunca retrocede; solo
    avanza al instante de inicio de la corrida cuando todas las páginas
    de la pasada se drenaron con éxito.
    """
    watermark: datetime
    counts_by_entity: Dict[str, int] = field(default_factory=dict)
    last_run_at: Optional[datetime] = None
    last_run_summary: Dict[str, Any] = field(default_factory=dict)
    watermarks_by_entity: Dict[str, datetime] = field(default_factory=dict)
    progress: Dict[str, PassProgress] = field(default_factory=dict)
    completed_entities: List[str] = field(default_factory=list)

    def watermark_for(self, entity: str) -> datetime:
        return self.watermarks_by_entity.get(entity, self.watermark)

    def advance_watermark(self, entity: str, new_watermark: datetime) -> None:
        current = self.watermarks_by_entity.get(entity)
        if current is None or new_watermark > current:
            self.watermarks_by_entity[entity] = new_watermark

    def advance_global_watermark(self, new_watermark: datetime) -> None:
        if new_watermark > self.watermark:
            self.watermark = new_watermark

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastSync": _iso(self.watermark),
            "countsByEntity": dict(self.counts_by_entity),
            "lastRun": dict(self.last_run_summary, timestamp=_iso(self.last_run_at)),
            "watermarks": {k: _iso(v) for k, v in self.watermarks_by_entity.items()},
            "progress": {k: v.to_dict() for k, v in self.progress.items()},
            "completedEntities": list(self.completed_entities),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        """
        Construye el checkpoint desde el JSON persistido.

        Raises:
            ValueError: si falta lastSync, no es ISO 8601 válido o alguna sección
                tiene un tipo inesperado
        """
        watermark = parse_iso(data.get("lastSync"))
        if watermark is None:
            raise ValueError(f"lastSync inválido: {data.get('lastSync')!r}")

        last_run = dict(_section(data, "lastRun", dict))
        last_run_at = parse_iso(last_run.pop("timestamp", None))

        watermarks = {}
        for entity, raw in _section(data, "watermarks", dict).items():
            parsed = parse_iso(raw)
            if parsed is not None:
                watermarks[entity] = parsed

        progress = {}
        for entity, raw in _section(data, "progress", dict).items():
            if not isinstance(raw, dict):
                raise ValueError(f"progress.{entity} inválido: {raw!r}")
            parsed_progress = PassProgress.from_dict(raw)
            if parsed_progress is not None:
                progress[entity] = parsed_progress

        return cls(
            watermark=watermark,
            counts_by_entity={k: int(v) for k, v in _section(data, "countsByEntity", dict).items()},
            last_run_at=last_run_at,
            last_run_summary=last_run,
            watermarks_by_entity=watermarks,
            progress=progress,
            completed_entities=[str(k) for k in _section(data, "completedEntities", list)],
        )
