"""
Stripe Payment Gateway Adapter

The only place that talks to the Stripe SDK. Creates customers and checkout
sessions, verifies inbound webhooks and pulls subscription/session state
for reconciliation. Everything it returns is a plain value or a domain
event; SDK objects and errors never leave this module.

All outbound calls go through the circuit breaker. Stripe errors surface as
ExternalGatewayError, an open circuit as CircuitBreakerOpenError.
"""

import json
import logging

from typing import Any, Awaitable, Callable, Dict, Optional

import stripe

from subledger.billing.domain.events import DomainEvent, SubscriptionUpdated
from subledger.billing.shared.config import PlanCatalog
from subledger.billing.shared.exceptions import ExternalGatewayError, SignatureError
from subledger.core.conf import Settings
from .circuit_breaker import StripeCircuitBreaker
from .idempotency import StripeIdempotencyManager
from .parser import checkout_from_session, parse_event, subscription_from_object

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a Stripe object (or an already plain dict)."""
    if isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


class StripeGateway:
    """
    Payment gateway adapter backed by Stripe.

    Constructed once per process and injected; it holds no global SDK state
    (the API key is passed on every request).

    Usage:
        gateway = StripeGateway(settings, catalog)
        customer_id = await gateway.create_customer(account_id, email)
        url = await gateway.create_checkout_session(account_id, 'BASIC', 1, customer_id)
        event = gateway.verify_and_parse_webhook(raw_body, signature_header)
    """

    def __init__(
        self,
        config: Settings,
        catalog: PlanCatalog,
        circuit_breaker: Optional[StripeCircuitBreaker] = None,
        idempotency: Optional[StripeIdempotencyManager] = None,
    ):
        self._api_key = config.STRIPE_SECRET_KEY
        self._webhook_secret = config.STRIPE_WEBHOOK_SECRET
        self._tolerance = config.STRIPE_WEBHOOK_TOLERANCE
        self._success_url = config.STRIPE_SUCCESS_URL
        self._cancel_url = config.STRIPE_CANCEL_URL
        self._catalog = catalog
        self._circuit_breaker = circuit_breaker or StripeCircuitBreaker(
            failure_threshold=config.GATEWAY_FAILURE_THRESHOLD,
            recovery_timeout=config.GATEWAY_RECOVERY_TIMEOUT,
        )
        self._idempotency = idempotency or StripeIdempotencyManager()

    @property
    def circuit_breaker(self) -> StripeCircuitBreaker:
        return self._circuit_breaker

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if not self._api_key:
            raise ExternalGatewayError("Stripe is not configured", code="GATEWAY_NOT_CONFIGURED")
        try:
            return await self._circuit_breaker.safe_call(func, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"[GATEWAY] {operation} failed: {e}")
            raise ExternalGatewayError(
                f"Payment provider call failed: {operation}",
                provider_error=getattr(e, 'user_message', None) or str(e),
            ) from e

    # -------------------------------------------------------------------------
    # Customers & checkout
    # -------------------------------------------------------------------------

    async def create_customer(self, account_id: str, email: Optional[str] = None) -> str:
        """Create a Stripe customer for an account and return its id."""
        customer = await self._call(
            'create_customer',
            stripe.Customer.create_async,
            email=email,
            metadata={'account_id': account_id},
            idempotency_key=self._idempotency.generate_customer_key(account_id, email),
        )
        logger.info(f"[GATEWAY] Created customer {customer.id} for {account_id}")
        return customer.id

    async def create_checkout_session(
        self,
        account_id: str,
        plan_id: str,
        duration: int,
        customer_id: Optional[str] = None,
    ) -> str:
        """
        Create a subscription checkout session.

        Returns:
            Redirect URL of the hosted checkout page

        Raises:
            ValidationError: Unknown plan, free plan or unsupported duration
            ExternalGatewayError: Stripe call failed
        """
        plan = self._catalog.get_plan(plan_id)
        price_id = self._catalog.get_price_id(plan.id, duration)
        metadata = {'account_id': account_id, 'plan_id': plan.id, 'duration': str(duration)}

        separator = '&' if '?' in self._success_url else '?'
        params: Dict[str, Any] = {
            'mode': 'subscription',
            'line_items': [{'price': price_id, 'quantity': 1}],
            'client_reference_id': account_id,
            'success_url': f"{self._success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
            'cancel_url': self._cancel_url,
            'metadata': metadata,
            'subscription_data': {'metadata': metadata},
        }
        if customer_id:
            params['customer'] = customer_id

        session = await self._call(
            'create_checkout_session',
            stripe.checkout.Session.create_async,
            idempotency_key=self._idempotency.generate_checkout_key(account_id, price_id, duration),
            **params,
        )
        logger.info(f"[GATEWAY] Created checkout session {session.id} for {account_id} ({plan.id}, {duration}m)")
        return session.url

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_and_parse_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> DomainEvent:
        """
        Verify a webhook signature and map the payload onto a domain event.

        Raises:
            SignatureError: Missing/invalid signature or malformed payload
        """
        if not self._webhook_secret:
            logger.error("[WEBHOOK] STRIPE_WEBHOOK_SECRET not configured, rejecting delivery")
            raise SignatureError("Webhook secret not configured")
        if not signature_header:
            logger.warning("[WEBHOOK] Missing Stripe-Signature header")
            raise SignatureError("Missing signature header")

        try:
            stripe.Webhook.construct_event(raw_body, signature_header, self._webhook_secret, tolerance=self._tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[WEBHOOK] Invalid signature: {e}")
            raise SignatureError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning(f"[WEBHOOK] Invalid payload: {e}")
            raise SignatureError("Invalid webhook payload") from e

        try:
            payload = raw_body.decode('utf-8') if isinstance(raw_body, bytes) else raw_body
            return parse_event(json.loads(payload))
        except ValueError as e:
            logger.warning(f"[WEBHOOK] Malformed event payload: {e}")
            raise SignatureError("Malformed webhook payload") from e

    # -------------------------------------------------------------------------
    # Reconciliation pulls
    # -------------------------------------------------------------------------

    async def retrieve_checkout_session(self, session_id: str) -> DomainEvent:
        """Pull a checkout session and map it like a checkout.session.completed delivery."""
        session = await self._call(
            'retrieve_checkout_session',
            stripe.checkout.Session.retrieve_async,
            session_id,
            expand=['subscription'],
        )
        data = _as_dict(session)
        if data.get('status') != 'complete':
            logger.info(f"[GATEWAY] Checkout session {session_id} is {data.get('status')}")
        return checkout_from_session(data, event_id=session_id)

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionUpdated:
        """Pull the provider's current view of a subscription (no event id)."""
        subscription = await self._call(
            'retrieve_subscription', stripe.Subscription.retrieve_async, subscription_id
        )
        return subscription_from_object(_as_dict(subscription), event_id=None)

    async def cancel_at_period_end(self, subscription_id: str) -> None:
        await self._call(
            'cancel_subscription', stripe.Subscription.modify_async, subscription_id, cancel_at_period_end=True
        )
        logger.info(f"[GATEWAY] Scheduled cancellation of {subscription_id} at period end")

    async def reactivate(self, subscription_id: str) -> None:
        await self._call(
            'reactivate_subscription', stripe.Subscription.modify_async, subscription_id, cancel_at_period_end=False
        )
        logger.info(f"[GATEWAY] Reactivated {subscription_id}")
