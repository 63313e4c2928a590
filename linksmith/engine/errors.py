"""Error types and failure isolation for optional collaborators.

This module implements:
- The linksmith exception hierarchy
- A circuit breaker that keeps a failing semantic provider from
  slowing down every suggestion call
"""

import asyncio
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Callable, Any, Awaitable

from loguru import logger


class LinksmithError(Exception):
    """Base class for linksmith errors."""


class InvalidQueryError(LinksmithError):
    """A search pattern the store could not parse."""

    def __init__(self, query: str, reason: str):
        self.query = query
        self.reason = reason
        super().__init__(f"Invalid query {query!r}: {reason}")


class CatalogUnavailableError(LinksmithError):
    """No entity catalog snapshot has ever been loaded."""


class SemanticUnavailableError(LinksmithError):
    """The semantic similarity provider cannot be used right now."""


class ServiceState(Enum):
    """Service health states."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CIRCUIT_OPEN = "circuit_open"


@dataclass
class ServiceHealth:
    """Tracks health of a guarded collaborator."""
    name: str
    state: ServiceState = ServiceState.HEALTHY
    error_count: int = 0
    success_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_traceback: Optional[str] = None
    last_success: Optional[datetime] = None
    circuit_opened_at: Optional[datetime] = None

    @property
    def error_rate(self) -> float:
        total = self.error_count + self.success_count
        if total == 0:
            return 0.0
        return self.error_count / total


class CircuitBreaker:
    """Circuit breaker with a per-call timeout for async collaborators."""

    def __init__(self,
                 name: str,
                 failure_threshold: int = 3,
                 recovery_timeout: float = 60.0,
                 call_timeout: Optional[float] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize circuit breaker.

        Args:
            name: Service name used in logs
            failure_threshold: Consecutive failures before opening the circuit
            recovery_timeout: Seconds before a recovery attempt is allowed
            call_timeout: Seconds allowed per call, None for no limit
            clock: Time source, replaceable in tests
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.call_timeout = call_timeout
        self._clock = clock

        self.health = ServiceHealth(name=name)
        self.recovery_attempts = 0

    @property
    def is_open(self) -> bool:
        return self.health.state == ServiceState.CIRCUIT_OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await ``func`` under circuit breaker protection.

        Raises:
            SemanticUnavailableError: circuit is open
            Exception: whatever ``func`` raised, including asyncio.TimeoutError
        """
        if self.is_open:
            if not self._should_attempt_recovery():
                raise SemanticUnavailableError(f"Circuit breaker {self.name} is open")
            logger.info(f"Circuit breaker {self.name}: attempting recovery")
            self.recovery_attempts += 1

        try:
            if self.call_timeout is not None:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
            else:
                result = await func(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            if self.health.consecutive_failures >= self.failure_threshold:
                self._open_circuit()
            raise

        self._record_success()
        return result

    def _record_success(self) -> None:
        self.health.success_count += 1
        self.health.consecutive_failures = 0
        self.health.last_success = self._clock()

        if self.health.state == ServiceState.CIRCUIT_OPEN:
            logger.info(f"Circuit breaker {self.name}: circuit closed after recovery")
            self.health.state = ServiceState.HEALTHY
            self.recovery_attempts = 0
        elif self.health.state != ServiceState.HEALTHY and self.health.error_rate < 0.1:
            self.health.state = ServiceState.HEALTHY

    def _record_failure(self, error: Exception) -> None:
        self.health.error_count += 1
        self.health.consecutive_failures += 1
        self.health.last_error = f"{type(error).__name__}: {error}"
        self.health.last_traceback = traceback.format_exc()

        if self.health.state == ServiceState.CIRCUIT_OPEN:
            return
        if self.health.error_rate > 0.5:
            self.health.state = ServiceState.UNHEALTHY
        elif self.health.error_rate > 0.2:
            self.health.state = ServiceState.DEGRADED

    def _open_circuit(self) -> None:
        logger.warning(
            f"Circuit breaker {self.name}: opening circuit after "
            f"{self.health.consecutive_failures} failures"
        )
        self.health.state = ServiceState.CIRCUIT_OPEN
        self.health.circuit_opened_at = self._clock()

    def _should_attempt_recovery(self) -> bool:
        if not self.health.circuit_opened_at:
            return True

        # Exponential backoff between recovery attempts
        backoff = self.recovery_timeout * (2 ** min(self.recovery_attempts, 5))
        return self._clock() - self.health.circuit_opened_at >= timedelta(seconds=backoff)

    def reset(self) -> None:
        self.health = ServiceHealth(name=self.name)
        self.recovery_attempts = 0
