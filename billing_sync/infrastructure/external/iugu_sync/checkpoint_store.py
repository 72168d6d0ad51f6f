"""
Checkpoint Store: persistencia del watermark y del progreso en un archivo JSON.

Garantías:
- Escritura atómica (archivo temporal + os.replace): nunca queda a medias.
- Un solo escritor a la vez (lock).
- Archivo ausente o corrupto -> watermark por defecto (now - lookback),
  sin abortar la corrida.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from billing_sync.domain.entities.checkpoint import Checkpoint
from billing_sync.shared.utils.datetime_utils import utc_now


def checkpoint_path_for(checkpoint_dir: Union[str, Path], run_type: str) -> Path:
    """Un archivo por tipo de corrida: `<dir>/<run_type>_checkpoint.json`."""
    return Path(checkpoint_dir) / f"{run_type}_checkpoint.json"


class CheckpointStore:
    def __init__(self, path: Union[str, Path], *, default_lookback_minutes: int = 60) -> None:
        self.path = Path(path)
        self.default_lookback_minutes = default_lookback_minutes
        self.last_load_failed = False
        self._lock = threading.Lock()

    def default_checkpoint(self) -> Checkpoint:
        return Checkpoint(watermark=utc_now() - timedelta(minutes=self.default_lookback_minutes))

    def load(self) -> Checkpoint:
        """
        Lee el checkpoint desde disco.

        Returns:
            Checkpoint: el persistido, o uno por defecto si no existe o está corrupto
        """
        with self._lock:
            self.last_load_failed = False
            if not self.path.exists():
                checkpoint = self.default_checkpoint()
                logger.info(
                    f"Checkpoint {self.path} no existe, usando watermark por defecto "
                    f"({checkpoint.watermark.isoformat()})"
                )
                return checkpoint

            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("el contenido no es un objeto JSON")
                return Checkpoint.from_dict(data)
            except (OSError, ValueError, TypeError) as e:
                self.last_load_failed = True
                checkpoint = self.default_checkpoint()
                logger.warning(
                    f"Checkpoint {self.path} ilegible ({e}), usando watermark por defecto "
                    f"({checkpoint.watermark.isoformat()})"
                )
                return checkpoint

    def save(self, checkpoint: Checkpoint) -> bool:
        """
        Persiste el checkpoint de forma atómica.

        Returns:
            bool: False si falló la escritura (se loguea, no se lanza)
        """
        payload = json.dumps(checkpoint.to_dict(), indent=2, ensure_ascii=False)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, self.path)
                return True
            except OSError as e:
                logger.error(f"No se pudo guardar checkpoint {self.path}: {e}")
                self._discard(tmp_path)
                return False

    def clear(self) -> None:
        """Elimina el checkpoint (al terminar un backfill acotado)."""
        with self._lock:
            self._discard(self.path)

    @staticmethod
    def _discard(path: Path) -> Optional[bool]:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"No se pudo eliminar {path}: {e}")
            return False
