"""
Governor de reintentos/backoff para llamadas remotas (Iugu y Postgres).

Estrategia:
- Errores transitorios (timeout, 5xx, conexión): reintento con delay
  `base * intento` (linear) o `base * 2**(intento-1)` (exponential).
- 429: cool-down fijo y más largo (default 30s, o Retry-After si es mayor),
  luego se reanuda la misma operación sin consumir un intento.
- Errores no recuperables: se devuelven al caller sin reintentar.

Nunca lanza la falla final: retorna un CallResult tipado.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from loguru import logger

from billing_sync.shared.exceptions import (
    RateLimitedError,
    RemoteCallError,
    SyncException,
    SystemicSyncError,
)

T = TypeVar("T")

LINEAR = "linear"
EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_s: float = 2.0
    strategy: str = LINEAR
    max_delay_s: float = 60.0
    rate_limit_cooldown_s: float = 30.0
    max_rate_limit_waits: int = 10

    def delay_for(self, attempt: int, base_delay_s: Optional[float] = None) -> float:
        """Delay antes del reintento número `attempt` (1-based)."""
        base = self.base_delay_s if base_delay_s is None else base_delay_s
        if self.strategy == EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        else:
            delay = base * attempt
        return min(self.max_delay_s, delay)


@dataclass(frozen=True)
class CallResult(Generic[T]):
    """Resultado tipado de una llamada gobernada."""

    value: Optional[T] = None
    error: Optional[SyncException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class RetryGovernor:
    """
    Envuelve cualquier llamada remota con reintentos acotados.

    `sleep` es inyectable para tests (y para poder cortar esperas largas).
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def with_retry(
        self,
        fn: Callable[[], T],
        *,
        description: str,
        max_attempts: Optional[int] = None,
        base_delay_s: Optional[float] = None,
    ) -> CallResult[T]:
        """
        Ejecuta `fn` con reintentos.

        Solo se capturan SyncException: un bug (KeyError, TypeError...) se
        propaga tal cual.
        """
        attempts_allowed = max_attempts or self.policy.max_attempts
        attempt = 0
        rate_limit_waits = 0

        while True:
            attempt += 1
            try:
                return CallResult(value=fn(), attempts=attempt)
            except RateLimitedError as e:
                rate_limit_waits += 1
                if rate_limit_waits > self.policy.max_rate_limit_waits:
                    logger.error(
                        f"{description}: rate limit persistente tras {rate_limit_waits - 1} cool-downs"
                    )
                    return CallResult(error=e, attempts=attempt)
                cooldown = max(self.policy.rate_limit_cooldown_s, e.retry_after_s or 0.0)
                logger.warning(f"{description}: rate limit (429), esperando {cooldown:.0f}s...")
                self._sleep(cooldown)
                # El cool-down no consume intento
                attempt -= 1
            except RemoteCallError as e:
                if not e.transient:
                    return CallResult(error=e, attempts=attempt)
                if attempt >= attempts_allowed:
                    logger.error(f"{description}: falló tras {attempt} intentos: {e.message}")
                    return CallResult(error=e, attempts=attempt)
                delay = self.policy.delay_for(attempt, base_delay_s)
                logger.warning(
                    f"{description}: intento {attempt}/{attempts_allowed} falló ({e.message}), "
                    f"reintentando en {delay:.1f}s"
                )
                self._sleep(delay)
            except SyncException as e:
                return CallResult(error=e, attempts=attempt)


class ConsecutiveErrorBudget:
    """
    Contador de errores consecutivos a nivel de corrida.

    Cuenta fallas de registros distintos (no reintentos de uno solo). Un
    éxito lo resetea. Al cruzar el umbral lanza SystemicSyncError para no
    seguir moliendo registro por registro durante una caída sistémica.
    """

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        self._consecutive = 0
        self._lock = threading.Lock()

    def record_success(self) -> None:
        with self._lock:
            self._consecutive = 0

    def record_failure(self, context: str) -> None:
        with self._lock:
            self._consecutive += 1
            count = self._consecutive
        if count >= self.threshold:
            logger.error(f"Demasiados errores consecutivos ({count}), abortando. Último: {context}")
            raise SystemicSyncError(
                f"{count} errores consecutivos (umbral {self.threshold})",
                details={"last_error": context},
            )
