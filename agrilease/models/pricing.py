from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from agrilease.models.plan import SubscriptionPlan, Tier


class DiscountType(str, Enum):
    INCOME_SUPPORT = "income_support"  # PM-KISAN beneficiary
    COOPERATIVE_PRIORITY = "cooperative_priority"  # FPO membership


class Discount(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: DiscountType
    percentage: int = Field(ge=0, le=100)
    benefit: Optional[str] = None

    @property
    def is_monetary(self) -> bool:
        return self.percentage > 0


class Applicant(BaseModel):
    """Scheme memberships of whoever is being quoted."""
    model_config = ConfigDict(frozen=True)

    is_beneficiary_discount_eligible: bool = False
    is_priority_membership_eligible: bool = False


class PriceQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_price: int
    final_price: int
    discounts: List[Discount]
    affordability_ratio: Optional[float] = None
    affordability_error: Optional[str] = None
    plan: SubscriptionPlan


class PricingCalculateRequest(BaseModel):
    region: Optional[str] = Field(default=None, max_length=100)
    tier: Tier
    is_beneficiary_discount_eligible: bool = False
    is_priority_membership_eligible: bool = False
    fallback_to_national: bool = True


class PlanComparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: SubscriptionPlan
    yearly_savings: int
    yearly_savings_percentage: int


class PlanListing(BaseModel):
    model_config = ConfigDict(frozen=True)

    region: Optional[str] = None
    currency: str
    plans: List[PlanComparison]
    recommended_tier: Optional[Tier] = None
