"""
Billing Shared Module

Plan catalog, error taxonomy and the snapshot cache.
"""

from .cache import (
    SNAPSHOT_CACHE_TTL,
    SNAPSHOT_NAMESPACE,
    USAGE_CACHE_TTL,
    USAGE_NAMESPACE,
    SnapshotCache,
)
from .config import (
    FREE_PLAN_ID,
    RENEWAL_BILLING_REASONS,
    SUPPORTED_DURATIONS,
    Plan,
    PlanCatalog,
)
from .exceptions import (
    AlreadySubscribedError,
    BillingError,
    CircuitBreakerOpenError,
    ConflictError,
    ExternalGatewayError,
    InsufficientCreditsError,
    NotCancelableError,
    NotFoundError,
    PersistenceError,
    PlanNotFoundError,
    SignatureError,
    ValidationError,
)

__all__ = [
    # Cache
    'SNAPSHOT_CACHE_TTL',
    'SNAPSHOT_NAMESPACE',
    'USAGE_CACHE_TTL',
    'USAGE_NAMESPACE',
    'SnapshotCache',
    # Plans
    'FREE_PLAN_ID',
    'RENEWAL_BILLING_REASONS',
    'SUPPORTED_DURATIONS',
    'Plan',
    'PlanCatalog',
    # Exceptions
    'AlreadySubscribedError',
    'BillingError',
    'CircuitBreakerOpenError',
    'ConflictError',
    'ExternalGatewayError',
    'InsufficientCreditsError',
    'NotCancelableError',
    'NotFoundError',
    'PersistenceError',
    'PlanNotFoundError',
    'SignatureError',
    'ValidationError',
]
