"""
Plan Catalog

This module defines subscription plans, their Stripe price ids per billing
duration and the credits each plan grants per billing cycle.

Usage:
    from subledger.billing.shared.config import PlanCatalog

    catalog = PlanCatalog.from_settings(settings)
    plan = catalog.get_plan('basic')
    print(plan.credits)  # 60
    price_id = catalog.get_price_id('BASIC', 12)
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from subledger.core.conf import Settings
from .exceptions import PlanNotFoundError, ValidationError


# =============================================================================
# PLAN IDENTIFIERS
# =============================================================================
FREE_PLAN_ID: str = "FREE"
BASIC_PLAN_ID: str = "BASIC"
PREMIUM_PLAN_ID: str = "PREMIUM"
ULTIMATE_PLAN_ID: str = "ULTIMATE"

# Billing durations in months
SUPPORTED_DURATIONS: Tuple[int, ...] = (1, 6, 12)

# Stripe invoice billing_reason values that mark a renewal cycle
RENEWAL_BILLING_REASONS: Tuple[str, ...] = ("subscription_cycle",)


# =============================================================================
# PLAN DEFINITION
# =============================================================================
@dataclass(frozen=True)
class Plan:
    """
    Subscription plan configuration.

    Attributes:
        id: Internal plan identifier (e.g., 'FREE', 'BASIC')
        display_name: Human-readable name shown in UI
        credits: Credits granted at each billing cycle (or trial start)
        price_ids: Stripe price id per billing duration in months
        is_free: Whether the plan is activated without checkout
    """
    id: str
    display_name: str
    credits: int
    price_ids: Dict[int, str] = field(default_factory=dict)
    is_free: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'id': self.id,
            'display_name': self.display_name,
            'credits': self.credits,
            'durations': sorted(d for d, price_id in self.price_ids.items() if price_id) if not self.is_free else list(SUPPORTED_DURATIONS),
            'is_free': self.is_free,
        }


class PlanCatalog:
    """
    Static mapping of plan ids to price ids and credit grants.

    Plan lookups are case-insensitive. Price ids that are not configured
    are treated as unavailable rather than as an empty string match.
    """

    def __init__(self, plans: List[Plan]):
        self._plans: Dict[str, Plan] = {plan.id: plan for plan in plans}
        self._by_price_id: Dict[str, Tuple[Plan, int]] = {}
        for plan in plans:
            for duration, price_id in plan.price_ids.items():
                if price_id:
                    self._by_price_id[price_id] = (plan, duration)

    @classmethod
    def from_settings(cls, config: Settings) -> 'PlanCatalog':
        """Build the catalog from static configuration."""
        return cls([
            Plan(
                id=FREE_PLAN_ID,
                display_name='Free',
                credits=config.FREE_PLAN_CREDITS,
                is_free=True,
            ),
            Plan(
                id=BASIC_PLAN_ID,
                display_name='Basic',
                credits=60,
                price_ids={
                    1: config.STRIPE_PRICE_BASIC_MONTHLY,
                    6: config.STRIPE_PRICE_BASIC_SEMIANNUAL,
                    12: config.STRIPE_PRICE_BASIC_YEARLY,
                },
            ),
            Plan(
                id=PREMIUM_PLAN_ID,
                display_name='Premium',
                credits=250,
                price_ids={
                    1: config.STRIPE_PRICE_PREMIUM_MONTHLY,
                    6: config.STRIPE_PRICE_PREMIUM_SEMIANNUAL,
                    12: config.STRIPE_PRICE_PREMIUM_YEARLY,
                },
            ),
            Plan(
                id=ULTIMATE_PLAN_ID,
                display_name='Ultimate',
                credits=600,
                price_ids={
                    1: config.STRIPE_PRICE_ULTIMATE_MONTHLY,
                    6: config.STRIPE_PRICE_ULTIMATE_SEMIANNUAL,
                    12: config.STRIPE_PRICE_ULTIMATE_YEARLY,
                },
            ),
        ])

    @property
    def free_plan(self) -> Plan:
        return self._plans[FREE_PLAN_ID]

    def get_plan(self, plan_id: Optional[str]) -> Plan:
        """
        Get a plan by id.

        Raises:
            PlanNotFoundError: If the plan doesn't exist
        """
        plan = self._plans.get((plan_id or '').strip().upper())
        if plan is None:
            raise PlanNotFoundError(str(plan_id))
        return plan

    def find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        """Get a plan by id, or None."""
        return self._plans.get((plan_id or '').strip().upper())

    def get_price_id(self, plan_id: str, duration: int) -> str:
        """
        Get the Stripe price id for a paid plan and billing duration.

        Raises:
            PlanNotFoundError: If the plan doesn't exist
            ValidationError: If the plan is free, the duration is unsupported
                or no price is configured for it
        """
        plan = self.get_plan(plan_id)
        if plan.is_free:
            raise ValidationError(f"Plan '{plan.id}' has no price", details={'plan_id': plan.id})
        if duration not in SUPPORTED_DURATIONS:
            raise ValidationError(
                f"Unsupported billing duration: {duration}",
                code="INVALID_DURATION",
                details={'duration': duration, 'supported': list(SUPPORTED_DURATIONS)}
            )
        price_id = plan.price_ids.get(duration)
        if not price_id:
            raise ValidationError(
                f"No price configured for plan {plan.id} with duration {duration}",
                code="PRICE_NOT_CONFIGURED",
                details={'plan_id': plan.id, 'duration': duration}
            )
        return price_id

    def get_plan_by_price_id(self, price_id: Optional[str]) -> Optional[Tuple[Plan, int]]:
        """Reverse lookup of (plan, duration) by Stripe price id."""
        if not price_id:
            return None
        return self._by_price_id.get(price_id)

    def list_plans(self) -> List[Plan]:
        """All plans, free plan first."""
        return list(self._plans.values())
