"""
Gateway Circuit Breaker

Circuit breaker around outbound Stripe API calls so a provider outage fails
fast instead of stacking up slow requests.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Stripe is failing, block requests
- HALF_OPEN: Recovery timeout elapsed, a single trial call is let through

State lives in the process; each worker trips independently.
"""

import asyncio
import logging
import time

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

import stripe

from subledger.billing.shared.exceptions import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking requests
    HALF_OPEN = "half_open"  # Testing recovery


class StripeCircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Only provider errors (stripe.StripeError by default) count as failures;
    anything else propagates without touching the breaker.

    Usage:
        breaker = StripeCircuitBreaker(failure_threshold=5, recovery_timeout=60)
        customer = await breaker.safe_call(stripe.Customer.create_async, email="...")
    """

    def __init__(
        self,
        circuit_name: str = "stripe_api",
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Tuple[Type[BaseException], ...] = (stripe.StripeError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the circuit breaker.

        Args:
            circuit_name: Name used in logs and status
            failure_threshold: Consecutive failures before opening the circuit
            recovery_timeout: Seconds to wait before letting a trial call through
            expected_exception: Exception types that count as failures
            clock: Monotonic time source
        """
        self.circuit_name = circuit_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    async def safe_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute a Stripe API call with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
            Exception: Whatever the call raised
        """
        async with self._lock:
            if not self._should_allow_request():
                reset_time = (self._opened_at or 0) + self.recovery_timeout
                logger.warning(f"[CIRCUIT BREAKER] Request blocked - circuit {self.circuit_name} is {self._state.value}")
                raise CircuitBreakerOpenError(service_name=self.circuit_name, reset_time=reset_time)
            is_trial = self._state == CircuitState.HALF_OPEN

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception as e:
            async with self._lock:
                self._record_failure(str(e))
            raise
        except BaseException:
            if is_trial:
                async with self._lock:
                    self._trial_in_flight = False
            raise

        async with self._lock:
            self._record_success()
        return result

    def get_status(self) -> Dict:
        """Current circuit state and counters."""
        return {
            'circuit_name': self.circuit_name,
            'state': self._state.value,
            'failure_count': self._failure_count,
            'failure_threshold': self.failure_threshold,
            'recovery_timeout': self.recovery_timeout,
        }

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _should_allow_request(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            if self._clock() - (self._opened_at or 0) >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info(f"[CIRCUIT BREAKER] Transitioned {self.circuit_name} to half-open")
                return True
            return False
        # HALF_OPEN: one trial call at a time
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def _record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"[CIRCUIT BREAKER] {self.circuit_name} recovered, closing circuit")
        self.reset()

    def _record_failure(self, error_message: str) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._trial_in_flight = False
            logger.warning(
                f"[CIRCUIT BREAKER] Circuit opened due to {self._failure_count} failures: {error_message}"
            )
        else:
            logger.debug(f"[CIRCUIT BREAKER] Recorded failure #{self._failure_count} for {self.circuit_name}")
