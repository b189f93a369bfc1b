"""Resolve a representative's tariff against a month of usage.

Tariff shapes, in order of precedence:

* unlimited plan: ``unlimited_monthly_price * plan_months``
* limited plan with duration-tier prices: ``usage_gb * price_for(plan_months)``
* legacy flat price: ``usage_gb * price_per_gb``

The discount is taken from the representative, falling back to the settings
default, and is applied to the total of whichever shape was used.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from billing_models import CENT, BillingError, Representative, RecordNotFoundError
from billing_settings import BillingSettings

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PriceQuote:
    plan_type: str
    plan_months: int
    unit_price: Decimal
    quantity: Decimal
    discount_percent: Decimal
    total_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    source: str


def _round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def effective_discount(rep: Representative, settings: BillingSettings) -> Decimal:
    percent = rep.discount_percent if rep.discount_percent is not None else settings.default_discount_percent
    # Out-of-range values are rejected at data entry; clamp anything stored before that rule.
    return min(max(percent, Decimal("0")), HUNDRED)


def apply_discount(total: Decimal, discount_percent: Decimal) -> Dict[str, Decimal]:
    total_amount = _round_money(total)
    discount_amount = _round_money(total_amount * discount_percent / HUNDRED)
    return {
        "total_amount": total_amount,
        "discount_amount": discount_amount,
        "final_amount": total_amount - discount_amount,
    }


def resolve_price(rep: Representative, usage_gb: Decimal, settings: BillingSettings) -> PriceQuote:
    """Price ``usage_gb`` for one representative; raises BillingError when no tariff applies."""
    months = rep.plan_months or settings.default_duration_months
    plan_type = rep.plan_type or settings.default_plan
    discount = effective_discount(rep, settings)

    if plan_type == "unlimited":
        if rep.unlimited_monthly_price is None:
            raise BillingError(f"Representative {rep.username} is on the unlimited plan but has no monthly price")
        unit_price = rep.unlimited_monthly_price
        quantity = Decimal(months)
        source = "unlimited"
    elif rep.duration_prices:
        tier_price = rep.price_for_duration(months)
        if tier_price is None:
            raise BillingError(f"Representative {rep.username} has no price for a {months}-month plan")
        unit_price = tier_price
        quantity = usage_gb
        source = f"price_{months}_month"
    elif rep.price_per_gb is not None:
        unit_price = rep.price_per_gb
        quantity = usage_gb
        source = "price_per_gb"
    else:
        raise BillingError(f"Representative {rep.username} has no pricing configured")

    amounts = apply_discount(quantity * unit_price, discount)
    return PriceQuote(
        plan_type=plan_type,
        plan_months=months,
        unit_price=unit_price,
        quantity=quantity,
        discount_percent=discount,
        source=source,
        **amounts,
    )


def resolve_for_username(
    username: str,
    usage_gb: Decimal,
    directory: Dict[str, Representative],
    settings: BillingSettings,
) -> PriceQuote:
    """Single-invoice entry point: an unknown username is fatal."""
    rep: Optional[Representative] = directory.get(username)
    if rep is None:
        raise RecordNotFoundError("representative", username, by="username")
    return resolve_price(rep, usage_gb, settings)
