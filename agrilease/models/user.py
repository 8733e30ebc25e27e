from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from agrilease.models.plan import Tier


class UserRole(str, Enum):
    FARMER = "farmer"
    LANDOWNER = "landowner"
    BOTH = "both"


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class SchemeFlags(BaseModel):
    """Government scheme memberships that drive pricing discounts."""
    model_config = ConfigDict(frozen=True)

    is_beneficiary_discount_eligible: bool = False  # PM-KISAN income support
    is_priority_membership_eligible: bool = False  # FPO / cooperative membership


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: UserRole = UserRole.FARMER
    region: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    scheme_flags: SchemeFlags = SchemeFlags()
    subscription_tier: Optional[Tier] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    subscription_period_start: Optional[datetime] = None
    subscription_period_end: Optional[datetime] = None
    payment_customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    free_trial_used: bool = False
    created_at: Optional[datetime] = None

    @property
    def has_active_subscription(self) -> bool:
        return self.subscription_status == SubscriptionStatus.ACTIVE

    @staticmethod
    def normalized_display_name(user_id: str, full_name: Optional[str]) -> str:
        if full_name and full_name.strip():
            return full_name.strip()
        suffix = user_id[-6:] if len(user_id) > 6 else user_id
        return f"user_{suffix}"


class UserProfileUpdate(BaseModel):
    """Self-service profile fields. Subscription fields are not editable here."""

    role: Optional[UserRole] = None
    region: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    is_beneficiary_discount_eligible: Optional[bool] = None
    is_priority_membership_eligible: Optional[bool] = None
