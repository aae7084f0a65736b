"""
Billing Exceptions

Custom exception classes for billing-related errors.
Every error that crosses a component boundary is one of these, so callers
(the facade, the HTTP layer, the webhook endpoint) can translate them into
typed results without inspecting driver or SDK exceptions.
"""


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    Attributes:
        message: Human readable description
        code: Stable machine readable error code
        details: Structured context for API responses
        http_status: Status code used by the HTTP layer
        retryable: Whether the same call may succeed if repeated
    """

    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class ValidationError(BillingError):
    """
    Raised when a request is rejected before any mutation.

    Examples:
        - Unknown plan id
        - Unsupported billing duration
        - Non-positive usage amount
    """

    def __init__(self, message: str = "Invalid billing request", code: str = "VALIDATION_ERROR", details: dict = None):
        super().__init__(message=message, code=code, details=details)


class PlanNotFoundError(ValidationError):
    """Raised when a requested plan doesn't exist."""

    def __init__(self, plan_id: str):
        super().__init__(
            message=f"Plan '{plan_id}' not found",
            code="PLAN_NOT_FOUND",
            details={'plan_id': plan_id}
        )
        self.plan_id = plan_id


class NotFoundError(BillingError):
    """Raised when there is no subscription to act on."""

    http_status = 404

    def __init__(self, message: str = "Subscription not found", account_id: str = None):
        super().__init__(
            message=message,
            code="NOT_FOUND",
            details={'account_id': account_id} if account_id else {}
        )
        self.account_id = account_id


class ConflictError(BillingError):
    """
    Raised when the subscription state does not allow the operation.

    Examples:
        - Trial requested for an account that already has a subscription
        - Cancel requested with nothing to cancel
    """

    http_status = 409

    def __init__(self, message: str = "Subscription state conflict", code: str = "CONFLICT", account_id: str = None):
        super().__init__(
            message=message,
            code=code,
            details={'account_id': account_id} if account_id else {}
        )
        self.account_id = account_id


class AlreadySubscribedError(ConflictError):
    """Raised when the account already holds a subscription."""

    def __init__(self, account_id: str = None, message: str = "Account already has a subscription"):
        super().__init__(message=message, code="ALREADY_SUBSCRIBED", account_id=account_id)


class NotCancelableError(ConflictError):
    """Raised when cancel/resume is requested for a subscription in the wrong state."""

    def __init__(self, account_id: str = None, message: str = "No cancellation is pending"):
        super().__init__(message=message, code="NOT_CANCELABLE", account_id=account_id)


class InsufficientCreditsError(BillingError):
    """
    Raised when a user doesn't have enough credits for an operation.

    Attributes:
        required: Credits required for the operation
        available: Credits currently available
    """

    http_status = 402

    def __init__(
        self,
        message: str = "Insufficient credits for this operation",
        required: int = 0,
        available: int = 0
    ):
        super().__init__(
            message=message,
            code="INSUFFICIENT_CREDITS",
            details={
                'required': required,
                'available': available,
                'shortfall': max(0, required - available)
            }
        )
        self.required = required
        self.available = available


class ExternalGatewayError(BillingError):
    """
    Raised when a call to the payment provider fails.

    Nothing has been committed locally when this is raised.
    """

    http_status = 502
    retryable = True

    def __init__(
        self,
        message: str = "Payment gateway error",
        code: str = "GATEWAY_ERROR",
        provider_error: str = None
    ):
        super().__init__(
            message=message,
            code=code,
            details={'provider_error': provider_error} if provider_error else {}
        )
        self.provider_error = provider_error


class CircuitBreakerOpenError(ExternalGatewayError):
    """Raised when the circuit breaker is open and preventing calls."""

    def __init__(
        self,
        message: str = "Circuit breaker is open. Service temporarily unavailable.",
        service_name: str = "stripe",
        reset_time: float = None
    ):
        super().__init__(message=message, code="CIRCUIT_BREAKER_OPEN")
        self.details.update({'service_name': service_name, 'reset_time': reset_time})
        self.service_name = service_name
        self.reset_time = reset_time


class PersistenceError(BillingError):
    """Raised when a ledger transaction fails and was rolled back."""

    http_status = 500
    retryable = True

    def __init__(self, message: str = "Ledger transaction failed"):
        super().__init__(message=message, code="PERSISTENCE_ERROR")


class SignatureError(BillingError):
    """
    Raised when an inbound webhook fails signature verification or parsing.

    Never triggers a transition.
    """

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message=message, code="INVALID_SIGNATURE")
