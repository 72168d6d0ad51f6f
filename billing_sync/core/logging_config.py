"""
Configuracion de logging (loguru) para el job de sincronizacion.
"""
import sys
from typing import Optional

from loguru import logger


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Reemplaza los sinks por defecto:
    - stderr con colores
    - archivo rotativo (si log_file): 500 MB por archivo, 10 dias de retencion
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        colorize=True,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{thread.name}</cyan> | "
            "<level>{message}</level>"
        ),
    )
    if log_file:
        logger.add(
            log_file,
            rotation="500 MB",
            retention="10 days",
            level=level,
            enqueue=True,
        )
