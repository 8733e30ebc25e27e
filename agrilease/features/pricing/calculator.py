"""
Pricing calculator.

Pure functions: no I/O, no persistence, deterministic for a given plan and
applicant. Safe to call for UI previews.

Discount rules (fixed order, percentages of the original price, additive):
1. income_support - PM-KISAN beneficiaries, 20% off the monthly price, once.
2. cooperative_priority - FPO membership, 0% price effect, records the
   priority-listing benefit.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from agrilease.core.errors import DivisionUndefinedError, ValidationError
from agrilease.models.plan import SubscriptionPlan, Tier
from agrilease.models.pricing import (
    Applicant,
    Discount,
    DiscountType,
    PlanComparison,
    PlanListing,
    PriceQuote,
)

INCOME_SUPPORT_PERCENTAGE = 20
PRIORITY_LISTING_BENEFIT = "Priority listing"

SMALLHOLDER_MAX_ACRES = 2
MID_SCALE_MAX_ACRES = 10


def discounts_for(applicant: Applicant) -> List[Discount]:
    discounts = []
    if applicant.is_beneficiary_discount_eligible:
        discounts.append(Discount(type=DiscountType.INCOME_SUPPORT, percentage=INCOME_SUPPORT_PERCENTAGE))
    if applicant.is_priority_membership_eligible:
        discounts.append(
            Discount(
                type=DiscountType.COOPERATIVE_PRIORITY,
                percentage=0,
                benefit=PRIORITY_LISTING_BENEFIT,
            )
        )
    return discounts


def apply_discounts(amount: int, discounts: Iterable[Discount]) -> int:
    """amount * (1 - sum(pct)/100), rounded half-up to a whole minor unit."""
    if amount < 0:
        raise ValidationError("amount must not be negative")
    total_pct = sum(d.percentage for d in discounts)
    if total_pct > 100:
        raise ValidationError("discounts exceed 100%")
    discounted = Decimal(amount) * (Decimal(100) - Decimal(total_pct)) / Decimal(100)
    return int(discounted.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def affordability_ratio(final_price: int, avg_region_income: Optional[int]) -> float:
    """Annualized price as a percentage of average annual income."""
    if not avg_region_income:
        raise DivisionUndefinedError("Average regional income is missing or zero")
    return (final_price * 12 / avg_region_income) * 100


def calculate_price(plan: SubscriptionPlan, applicant: Applicant) -> PriceQuote:
    original = plan.monthly_price
    discounts = discounts_for(applicant)
    final = apply_discounts(original, discounts)

    ratio: Optional[float] = None
    ratio_error: Optional[str] = None
    try:
        ratio = affordability_ratio(final, plan.avg_region_income)
    except DivisionUndefinedError as exc:
        ratio_error = exc.code

    return PriceQuote(
        original_price=original,
        final_price=final,
        discounts=discounts,
        affordability_ratio=ratio,
        affordability_error=ratio_error,
        plan=plan,
    )


def yearly_savings(plan: SubscriptionPlan) -> int:
    return plan.monthly_price * 12 - plan.yearly_price


def yearly_savings_percentage(plan: SubscriptionPlan) -> int:
    monthly_total = plan.monthly_price * 12
    ratio = Decimal(yearly_savings(plan)) * 100 / Decimal(monthly_total)
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def recommended_tier(farm_size_acres: float) -> Tier:
    if farm_size_acres < 0:
        raise ValidationError("farm size must not be negative")
    if farm_size_acres <= SMALLHOLDER_MAX_ACRES:
        return Tier.BASIC
    if farm_size_acres <= MID_SCALE_MAX_ACRES:
        return Tier.PRO
    return Tier.ENTERPRISE


def compare_plans(
    plans: Iterable[SubscriptionPlan],
    *,
    currency: str,
    region: Optional[str] = None,
    farm_size_acres: Optional[float] = None,
) -> PlanListing:
    return PlanListing(
        region=region,
        currency=currency,
        plans=[
            PlanComparison(
                plan=plan,
                yearly_savings=yearly_savings(plan),
                yearly_savings_percentage=yearly_savings_percentage(plan),
            )
            for plan in plans
        ],
        recommended_tier=recommended_tier(farm_size_acres) if farm_size_acres is not None else None,
    )
