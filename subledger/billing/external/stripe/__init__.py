"""
Stripe Integration

Payment gateway adapter, webhook payload parser, circuit breaker and
outbound idempotency keys.
"""

from .circuit_breaker import CircuitState, StripeCircuitBreaker
from .gateway import StripeGateway
from .idempotency import StripeIdempotencyManager
from .parser import parse_event

__all__ = [
    'CircuitState',
    'StripeCircuitBreaker',
    'StripeGateway',
    'StripeIdempotencyManager',
    'parse_event',
]
