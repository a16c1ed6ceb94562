"""
linkrewards.integration.retry - Circuit Breaker and Retry for Ledger Reads

Protects the ledger fetch glue with:
- Circuit breaker to stop hammering an endpoint that keeps failing
- A bounded backoff schedule with proportional jitter

The core pipeline stages never retry; only the I/O around them does.

Usage:
    from linkrewards.integration.retry import BackoffPolicy, CircuitBreaker, call_with_retry

    breaker = CircuitBreaker("ledger")
    data = call_with_retry(lambda: session.get(url).json(), breaker, BackoffPolicy(attempts=3))
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Iterator, Optional, Tuple, Type, TypeVar

from ..errors import ConfigError, LedgerError

logger = logging.getLogger("linkrewards.integration.retry")

T = TypeVar('T')


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = auto()      # Normal operation, requests flow through
    OPEN = auto()        # Failing, requests are blocked
    HALF_OPEN = auto()   # Testing if the endpoint recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5      # Failures before opening circuit
    success_threshold: int = 1      # Successes to close circuit from half-open
    timeout_seconds: float = 30.0   # Time before trying half-open


class CircuitBreaker:
    """
    Circuit breaker around one remote endpoint.

    CLOSED counts failures; at failure_threshold it opens and blocks calls
    for timeout_seconds, then lets a probe through in HALF_OPEN. A probe
    success closes the circuit, a probe failure reopens it.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the timeout elapsed."""
        with self._lock:
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                if self._clock() - self._opened_at >= self.config.timeout_seconds:
                    self._state = CircuitState.HALF_OPEN
                    self._success_count = 0
                    logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")
            return self._state

    def is_available(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            else:
                self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (probe failed)")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    f"Circuit {self.name}: CLOSED -> OPEN (failures: {self._failure_count})"
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Waits between attempts of one ledger read.

    Wait n (0-based) is initial_delay * multiplier**n, capped at max_delay
    and then spread by up to +/- jitter_fraction of itself. A policy with
    `attempts` tries yields attempts - 1 waits.
    """
    attempts: int = 4
    initial_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.25

    def __post_init__(self):
        if self.attempts < 1:
            raise ConfigError(f"attempts must be at least 1, got {self.attempts}")
        if self.initial_delay < 0 or self.max_delay < self.initial_delay:
            raise ConfigError(
                f"Need 0 <= initial_delay <= max_delay, got {self.initial_delay}, {self.max_delay}"
            )
        if self.multiplier < 1:
            raise ConfigError(f"multiplier must be >= 1, got {self.multiplier}")
        if not 0 <= self.jitter_fraction < 1:
            raise ConfigError(f"jitter_fraction must be in [0, 1), got {self.jitter_fraction}")

    def waits(self, rng: Optional[random.Random] = None) -> Iterator[float]:
        rng = rng or random.Random()
        delay = self.initial_delay
        for _ in range(self.attempts - 1):
            wait = min(delay, self.max_delay)
            if self.jitter_fraction:
                wait *= 1 + rng.uniform(-self.jitter_fraction, self.jitter_fraction)
            yield wait
            delay = min(delay * self.multiplier, self.max_delay)


def call_with_retry(
    operation: Callable[[], T],
    breaker: CircuitBreaker,
    policy: Optional[BackoffPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """
    Run an operation through the circuit breaker, backing off between tries.

    Args:
        operation: Zero-argument callable doing the I/O
        breaker: Circuit breaker guarding the endpoint
        policy: Backoff schedule (defaults to BackoffPolicy())
        retry_on: Exception types that count as transient
        sleep: Sleep function (injectable for tests)
        rng: Jitter source (injectable for tests)

    Returns:
        The operation's result

    Raises:
        LedgerError: If the circuit is open or every attempt failed
    """
    waits = (policy or BackoffPolicy()).waits(rng)
    attempt = 0

    while True:
        attempt += 1
        if not breaker.is_available():
            raise LedgerError(f"Circuit {breaker.name} is open")
        try:
            result = operation()
        except retry_on as e:
            breaker.record_failure()
            wait = next(waits, None)
            if wait is None:
                raise LedgerError(f"{breaker.name} failed after {attempt} attempts: {e}") from e
            logger.warning(f"{breaker.name} attempt {attempt} failed: {e}; retrying in {wait:.2f}s")
            sleep(wait)
            continue
        breaker.record_success()
        return result
