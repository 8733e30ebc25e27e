"""
Reference pricing store.

PlanCatalog is an immutable lookup over provisioned subscription plans,
keyed by (region, tier) for regional plans and by tier for national plans.
It is built once at startup (build_catalog / load_catalog) and handed to
whatever needs plan lookup; there is no module-level catalog instance.

Default plan data (provisioned into subscription_plans when empty):
- National: basic 99/999, pro 499/4999, enterprise 1999/19999 rupees
  per month/year; income reference is the average monthly income of the
  tier's target farm size, annualized.
- Regional: Punjab, Bihar, Uttar Pradesh with state-level average income.
"""

from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Tuple

from fastapi import Request

from agrilease.core.config import settings
from agrilease.core.errors import PlanNotFoundError, RegionNotFoundError, ValidationError
from agrilease.models.plan import SubscriptionPlan, Tier

PRICING_MODELS = ("regional", "national")

_NATIONAL_FEATURES = {
    Tier.BASIC: [
        "Search & filter land listings",
        "5 messages per month",
        "2 active tenancy requests",
        "Basic government scheme alerts",
        "Mobile app access",
        "Standard support (48-hour response)",
    ],
    Tier.PRO: [
        "Unlimited land search & listings",
        "50 messages per month",
        "10 active tenancy requests",
        "Basic analytics dashboard",
        "PDF invoice generation",
        "Government subsidy calculator",
        "Crop advisory alerts",
        "Priority support (24-hour response)",
        "Email notifications",
    ],
    Tier.ENTERPRISE: [
        "Unlimited land listings & search",
        "Unlimited messaging",
        "Unlimited tenancy requests",
        "Advanced analytics & reports",
        "Bulk operations",
        "Multi-user seats (3 included)",
        "Dedicated account manager",
        "Priority 24/7 support",
        "Custom contract templates",
    ],
}

# -1 = unlimited
_TIER_LIMITS = {
    Tier.BASIC: {
        "land_listings": 3,
        "messages_per_month": 5,
        "active_requests": 2,
        "escrow_protection": False,
        "priority_support": False,
        "analytics": False,
        "multi_user": False,
    },
    Tier.PRO: {
        "land_listings": -1,
        "messages_per_month": 50,
        "active_requests": 10,
        "escrow_protection": True,
        "priority_support": True,
        "analytics": True,
        "multi_user": False,
    },
    Tier.ENTERPRISE: {
        "land_listings": -1,
        "messages_per_month": -1,
        "active_requests": -1,
        "escrow_protection": True,
        "priority_support": True,
        "analytics": True,
        "multi_user": 3,
    },
}

_NATIONAL_NAMES = {
    Tier.BASIC: "Basic Plan",
    Tier.PRO: "Pro Plan",
    Tier.ENTERPRISE: "Enterprise Plan",
}

# (monthly, yearly, average monthly income of target farmer) in paise
_NATIONAL_PRICES = {
    Tier.BASIC: (9900, 99900, 850000),
    Tier.PRO: (49900, 499900, 2500000),
    Tier.ENTERPRISE: (199900, 1999900, 7500000),
}

_REGIONAL_FEATURES = {
    Tier.BASIC: ["Property listings", "Basic messaging", "Government scheme integration"],
    Tier.PRO: ["Everything in Basic", "Priority support", "Advanced filters", "Analytics"],
    Tier.ENTERPRISE: ["Everything in Pro", "Priority listing", "Chat analytics", "Dedicated support"],
}

# region -> ((basic, pro, enterprise) monthly prices, average annual state income), paise
_REGIONAL_PRICES = {
    "Punjab": ((89900, 129900, 179900), 35000000),
    "Bihar": ((39900, 49900, 69900), 18500000),
    "Uttar Pradesh": ((59900, 79900, 99900), 25000000),
}

# Regional yearly billing: two months free, same as the national plans
_YEARLY_MONTHS_CHARGED = 10


def _region_key(region: str) -> str:
    return " ".join(region.split()).casefold()


def _slug(text: str) -> str:
    return "-".join(text.lower().split())


def default_plans(trial_days: Optional[int] = None) -> List[SubscriptionPlan]:
    """Plan records provisioned on a fresh database."""
    trial = settings.SUBSCRIPTION_TRIAL_DAYS if trial_days is None else trial_days
    plans: List[SubscriptionPlan] = []
    for tier, (monthly, yearly, monthly_income) in _NATIONAL_PRICES.items():
        plans.append(
            SubscriptionPlan(
                plan_id=f"national-{tier.value}",
                tier=tier,
                name=_NATIONAL_NAMES[tier],
                monthly_price=monthly,
                yearly_price=yearly,
                region=None,
                avg_region_income=monthly_income * 12,
                features=_NATIONAL_FEATURES[tier],
                limits=_TIER_LIMITS[tier],
                free_trial_days=trial,
            )
        )
    for region, (prices, annual_income) in _REGIONAL_PRICES.items():
        for tier, monthly in zip((Tier.BASIC, Tier.PRO, Tier.ENTERPRISE), prices):
            plans.append(
                SubscriptionPlan(
                    plan_id=f"{_slug(region)}-{tier.value}",
                    tier=tier,
                    name=f"{region} {_NATIONAL_NAMES[tier]}",
                    monthly_price=monthly,
                    yearly_price=monthly * _YEARLY_MONTHS_CHARGED,
                    region=region,
                    avg_region_income=annual_income,
                    features=_REGIONAL_FEATURES[tier],
                    limits=_TIER_LIMITS[tier],
                    free_trial_days=trial,
                )
            )
    return plans


class PlanCatalog:
    """Immutable plan lookup. Build with build_catalog() or load_catalog()."""

    __slots__ = ("_model", "_national", "_regional", "_regions")

    def __init__(self, plans: Iterable[SubscriptionPlan], pricing_model: str = "regional"):
        if pricing_model not in PRICING_MODELS:
            raise ValidationError(f"Unknown pricing model: {pricing_model}")
        national: Dict[Tier, SubscriptionPlan] = {}
        regional: Dict[Tuple[str, Tier], SubscriptionPlan] = {}
        regions: Dict[str, str] = {}
        for plan in plans:
            if plan.region is None:
                if plan.tier in national:
                    raise ValidationError(f"Duplicate national plan for tier {plan.tier.value}")
                national[plan.tier] = plan
                continue
            if pricing_model == "national":
                continue
            key = (_region_key(plan.region), plan.tier)
            if key in regional:
                raise ValidationError(f"Duplicate plan for {plan.region}/{plan.tier.value}")
            regional[key] = plan
            regions.setdefault(key[0], plan.region)

        object.__setattr__(self, "_model", pricing_model)
        object.__setattr__(self, "_national", MappingProxyType(national))
        object.__setattr__(self, "_regional", MappingProxyType(regional))
        object.__setattr__(self, "_regions", MappingProxyType(regions))

    def __setattr__(self, name, value):
        raise AttributeError("PlanCatalog is immutable")

    def __len__(self) -> int:
        return len(self._national) + len(self._regional)

    @property
    def pricing_model(self) -> str:
        return self._model

    def regions(self) -> List[str]:
        return sorted(self._regions.values())

    def has_region(self, region: str) -> bool:
        return _region_key(region) in self._regions

    def national(self, tier: Tier) -> SubscriptionPlan:
        plan = self._national.get(tier)
        if plan is None:
            raise PlanNotFoundError(f"No national plan for tier {tier.value}")
        return plan

    def national_plans(self) -> List[SubscriptionPlan]:
        return [self._national[tier] for tier in Tier if tier in self._national]

    def plans_for_region(self, region: str) -> List[SubscriptionPlan]:
        key = _region_key(region)
        if key not in self._regions:
            raise RegionNotFoundError(f"Region '{region}' has no pricing data")
        return [self._regional[(key, tier)] for tier in Tier if (key, tier) in self._regional]

    def resolve(self, region: Optional[str], tier: Tier) -> SubscriptionPlan:
        """
        Resolve the plan for (region, tier).

        Raises:
            RegionNotFoundError: region given but absent from the store
            PlanNotFoundError: region known but has no plan for tier, or no
                national plan for tier when region is omitted
        """
        if self._model == "national" or not region:
            return self.national(tier)
        key = _region_key(region)
        if key not in self._regions:
            raise RegionNotFoundError(f"Region '{region}' has no pricing data")
        plan = self._regional.get((key, tier))
        if plan is None:
            raise PlanNotFoundError(f"No {tier.value} plan for region '{self._regions[key]}'")
        return plan

    def resolve_with_fallback(self, region: Optional[str], tier: Tier) -> SubscriptionPlan:
        """resolve(), falling back to the national plan when the region has no plan for tier."""
        try:
            return self.resolve(region, tier)
        except PlanNotFoundError:
            return self.national(tier)


def build_catalog(
    plans: Optional[Iterable[SubscriptionPlan]] = None,
    pricing_model: Optional[str] = None,
) -> PlanCatalog:
    return PlanCatalog(
        default_plans() if plans is None else plans,
        pricing_model or settings.PRICING_MODEL,
    )


def load_catalog(session, pricing_model: Optional[str] = None) -> PlanCatalog:
    """Build the catalog from provisioned subscription_plans rows."""
    from agrilease.features.pricing.repository import PlanRepository

    return build_catalog(PlanRepository(session).list_all(), pricing_model)


def get_catalog(request: Request) -> PlanCatalog:
    """FastAPI dependency: the catalog built at startup."""
    catalog = getattr(request.app.state, "catalog", None)
    if catalog is None:
        raise RuntimeError("Plan catalog not initialized")
    return catalog
