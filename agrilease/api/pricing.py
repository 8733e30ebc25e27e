"""
Pricing API.

- GET  /api/pricing/plans        national plan comparison
- GET  /api/pricing/{region}     plans for one region
- POST /api/pricing/calculate    discounted quote for an applicant
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from agrilease.core.config import settings
from agrilease.core.errors import RegionNotFoundError
from agrilease.features.pricing.calculator import calculate_price, compare_plans
from agrilease.features.pricing.catalog import PlanCatalog, get_catalog
from agrilease.models.pricing import Applicant, PlanListing, PriceQuote, PricingCalculateRequest

router = APIRouter(prefix="/api/pricing", tags=["pricing"])


@router.get("/plans", response_model=PlanListing)
def list_national_plans(
    farm_size_acres: Optional[float] = Query(None, ge=0),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """National plans with yearly savings; recommends a tier when farm size is given."""
    return compare_plans(
        catalog.national_plans(),
        currency=settings.CURRENCY,
        farm_size_acres=farm_size_acres,
    )


@router.post("/calculate", response_model=PriceQuote)
def calculate(body: PricingCalculateRequest, catalog: PlanCatalog = Depends(get_catalog)):
    """
    Quote the monthly price for a tier after scheme discounts.

    Unknown regions fall back to the national plan unless fallback_to_national
    is false, in which case they return 404 region_not_found.
    """
    if body.fallback_to_national:
        try:
            plan = catalog.resolve_with_fallback(body.region, body.tier)
        except RegionNotFoundError:
            plan = catalog.national(body.tier)
    else:
        plan = catalog.resolve(body.region, body.tier)

    applicant = Applicant(
        is_beneficiary_discount_eligible=body.is_beneficiary_discount_eligible,
        is_priority_membership_eligible=body.is_priority_membership_eligible,
    )
    return calculate_price(plan, applicant)


@router.get("/{region}", response_model=PlanListing)
def list_region_plans(
    region: str,
    farm_size_acres: Optional[float] = Query(None, ge=0),
    catalog: PlanCatalog = Depends(get_catalog),
):
    plans = catalog.plans_for_region(region)
    return compare_plans(
        plans,
        currency=settings.CURRENCY,
        region=plans[0].region if plans else region,
        farm_size_acres=farm_size_acres,
    )
