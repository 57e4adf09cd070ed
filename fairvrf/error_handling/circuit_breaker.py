"""Circuit breaker for ledger submissions."""
import time
import threading
from typing import Any, Awaitable, Callable, Dict, Tuple, Type

import structlog

logger = structlog.get_logger()


class CircuitBreaker:
    """
    Fails submissions fast while the RPC endpoint keeps erroring.

    Circuit states:
    - CLOSED: submissions go through; consecutive failures are counted
    - OPEN: submissions are refused until ``recovery_timeout`` has elapsed
    - HALF-OPEN: trial submissions decide whether to close or reopen

    Exceptions listed in ``ignored_exceptions`` are contract answers rather
    than endpoint faults (for example a request that was already fulfilled);
    they pass through without touching the failure count.
    """

    STATE_CLOSED = 'closed'
    STATE_OPEN = 'open'
    STATE_HALF_OPEN = 'half-open'

    class CircuitBreakerError(Exception):
        """Raised instead of calling through while the circuit is open."""

    def __init__(
        self,
        name: str = "ledger",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        half_open_success_threshold: int = 1,
        ignored_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_success_threshold = half_open_success_threshold
        self.ignored_exceptions = ignored_exceptions
        self.clock = clock

        self.state = self.STATE_CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = 0.0
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return self.state == self.STATE_OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` unless the circuit is open.

        Raises:
            CircuitBreakerError: the circuit is open
            Exception: whatever ``func`` raised
        """
        self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            self._record_success()
            raise
        except Exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def _admit(self) -> None:
        with self._lock:
            if self.state != self.STATE_OPEN:
                return
            remaining = self.recovery_timeout - (self.clock() - self.opened_at)
            if remaining > 0:
                raise self.CircuitBreakerError(
                    f"{self.name} circuit open for another {remaining:.0f}s"
                )
            self.state = self.STATE_HALF_OPEN
            self.success_count = 0
            logger.info("circuit_breaker_half_open", breaker=self.name)

    def _record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            if self.state != self.STATE_HALF_OPEN:
                return
            self.success_count += 1
            if self.success_count >= self.half_open_success_threshold:
                self.state = self.STATE_CLOSED
                logger.info("circuit_breaker_closed", breaker=self.name)

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            self.failure_count += 1
            if self.state == self.STATE_HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != self.STATE_OPEN:
                    logger.warning("circuit_breaker_opened",
                                   breaker=self.name,
                                   failure_count=self.failure_count,
                                   error=str(error))
                self.state = self.STATE_OPEN
                self.opened_at = self.clock()

    def reset(self) -> None:
        """Close the circuit and clear counters."""
        with self._lock:
            self.state = self.STATE_CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.opened_at = 0.0
        logger.info("circuit_breaker_reset", breaker=self.name)

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'state': self.state,
                'failure_count': self.failure_count,
                'success_count': self.success_count,
                'opened_at': self.opened_at,
            }
