"""
Circuit breaker for calls to external platforms.

State lives in Django's cache so every web and worker process sees the same
circuit. After ``failure_threshold`` consecutive tracked failures the circuit
opens and callers fail fast with CircuitOpenError. Once ``recovery_timeout``
seconds have passed a single probe call is let through: success closes the
circuit, failure opens it for another full timeout.

Cache keys (per circuit name):
    circuit:<name>:failures   consecutive failure count
    circuit:<name>:opened_at  epoch seconds the circuit last opened
    circuit:<name>:probe      held by the caller running the recovery probe

Usage:
    from core.circuit_breaker import CircuitBreaker

    tiktok_circuit = CircuitBreaker(
        "tiktok-api",
        failure_threshold=5,
        tracked_exceptions=(TransientUpstreamError,),
    )

    with tiktok_circuit.call():
        response = client.post(...)

If the cache is unreachable the breaker fails open: calls go through and
nothing is recorded.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING

from django.core.cache import cache

from core.exceptions import ExternalServiceError

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

# Keys outlive any sensible recovery timeout
KEY_TTL_SECONDS = 3600


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ExternalServiceError):
    """
    Raised instead of calling through an open circuit.

    Signals that the platform is considered unavailable, not that a call
    actually failed.
    """

    default_error_code: str = "SERVICE_UNAVAILABLE"


class CircuitBreaker:
    """
    Cache-backed circuit breaker shared by all processes.

    Attributes:
        name: Circuit identifier, part of every cache key
        failure_threshold: Consecutive failures that open the circuit
        recovery_timeout: Seconds an open circuit waits before probing
        tracked_exceptions: Exception types call() records as failures
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        tracked_exceptions: tuple[type[BaseException], ...] = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.tracked_exceptions = tracked_exceptions

        prefix = f"circuit:{name}"
        self._failures_key = f"{prefix}:failures"
        self._opened_at_key = f"{prefix}:opened_at"
        self._probe_key = f"{prefix}:probe"

    @property
    def state(self) -> CircuitState:
        opened_at = cache.get(self._opened_at_key)
        if opened_at is None:
            return CircuitState.CLOSED
        if time.time() - opened_at < self.recovery_timeout:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def is_available(self) -> bool:
        """
        Whether a call may go through right now.

        In HALF_OPEN only the first caller gets True; it owns the probe until
        it records a result or the recovery timeout passes again.
        """
        try:
            state = self.state
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.OPEN:
                return False
            acquired = cache.add(self._probe_key, 1, timeout=self.recovery_timeout)
            if acquired:
                logger.info(
                    "Circuit breaker probing recovery",
                    extra={"event_type": "circuit.half_open", "circuit": self.name},
                )
            return acquired
        except Exception:
            logger.warning(
                "Circuit breaker cache unavailable, failing open",
                extra={"event_type": "circuit.cache_error", "circuit": self.name},
                exc_info=True,
            )
            return True

    def record_success(self) -> None:
        try:
            if cache.get(self._opened_at_key) is not None:
                logger.info(
                    "Circuit breaker closed",
                    extra={"event_type": "circuit.closed", "circuit": self.name},
                )
            cache.delete_many([self._failures_key, self._opened_at_key, self._probe_key])
        except Exception:
            logger.warning(
                "Circuit breaker could not record success",
                extra={"event_type": "circuit.cache_error", "circuit": self.name},
                exc_info=True,
            )

    def record_failure(self) -> None:
        """Count a failure; opens the circuit at the threshold or on a failed probe."""
        try:
            if self.state == CircuitState.HALF_OPEN:
                self._open(reason="probe_failed")
                return

            try:
                failures = cache.incr(self._failures_key)
            except ValueError:
                cache.set(self._failures_key, 1, timeout=KEY_TTL_SECONDS)
                failures = 1

            if failures >= self.failure_threshold and self.state == CircuitState.CLOSED:
                self._open(reason="threshold", failures=failures)
        except Exception:
            logger.warning(
                "Circuit breaker could not record failure",
                extra={"event_type": "circuit.cache_error", "circuit": self.name},
                exc_info=True,
            )

    @contextmanager
    def call(self) -> Iterator[None]:
        """
        Run the block through the circuit.

        Raises CircuitOpenError without running the block when the circuit
        is open. Exceptions outside ``tracked_exceptions`` propagate without
        touching the failure count.
        """
        if not self.is_available():
            raise CircuitOpenError(
                "The platform is temporarily unavailable. Please retry later.",
                details={"circuit": self.name},
            )

        try:
            yield
        except self.tracked_exceptions:
            self.record_failure()
            raise
        else:
            self.record_success()

    def reset(self) -> None:
        cache.delete_many([self._failures_key, self._opened_at_key, self._probe_key])

    def get_status(self) -> dict:
        """Snapshot for admin and health reporting."""
        try:
            status = {
                "name": self.name,
                "state": self.state.value,
                "failure_count": cache.get(self._failures_key, 0),
                "failure_threshold": self.failure_threshold,
            }
            opened_at = cache.get(self._opened_at_key)
            if opened_at is not None:
                status["recovery_in_seconds"] = max(
                    0, int(self.recovery_timeout - (time.time() - opened_at))
                )
            return status
        except Exception as e:
            return {"name": self.name, "state": "unknown", "error": str(e)}

    def _open(self, reason: str, failures: int | None = None) -> None:
        cache.set(self._opened_at_key, time.time(), timeout=KEY_TTL_SECONDS)
        cache.delete(self._probe_key)
        logger.warning(
            "Circuit breaker opened",
            extra={
                "event_type": "circuit.opened",
                "circuit": self.name,
                "reason": reason,
                "failure_count": failures,
            },
        )

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, threshold={self.failure_threshold})"
