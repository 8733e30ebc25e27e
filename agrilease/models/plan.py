"""
agrilease/models/plan.py

Subscription plan reference data.

Plans are provisioned once and never mutated by request flow. A plan with
region=None is a national plan. All prices are integer minor units (paise).
"""

from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Tier(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Ordering used by subscription gates (pro-or-above etc.)
TIER_RANK = {
    Tier.BASIC: 1,
    Tier.PRO: 2,
    Tier.ENTERPRISE: 3,
}


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    tier: Tier
    name: str
    monthly_price: int = Field(gt=0, description="Minor units per month")
    yearly_price: int = Field(gt=0, description="Minor units per year")
    region: Optional[str] = Field(default=None, description="None = national plan")
    avg_region_income: Optional[int] = Field(default=None, ge=0, description="Average annual income, minor units")
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, Union[int, bool]] = Field(default_factory=dict)
    free_trial_days: int = Field(default=0, ge=0)

    @property
    def is_national(self) -> bool:
        return self.region is None

    def price_for(self, period: BillingPeriod) -> int:
        if period == BillingPeriod.YEARLY:
            return self.yearly_price
        return self.monthly_price
