"""
agrilease/models/payment.py

Local mirror of provider-facing monetary operations.

One Payment row exists per payment hold or subscription invoice. Rows are
created `pending` and reconciled by escrow operations or provider webhooks.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from agrilease.models.plan import BillingPeriod, Tier
from agrilease.models.user import SubscriptionStatus


class PaymentPurpose(str, Enum):
    SUBSCRIPTION = "subscription"
    DEPOSIT = "deposit"
    RENT = "rent"
    COMMISSION = "commission"


class PaymentType(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    user_id: str
    amount: int
    currency: str
    purpose: PaymentPurpose
    type: PaymentType = PaymentType.ONE_TIME
    status: PaymentStatus = PaymentStatus.PENDING
    provider_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentHoldResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    provider_ref: str
    client_token: Optional[str] = None


class SubscriptionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_ref: str
    status: SubscriptionStatus
    tier: Tier
    billing_period: BillingPeriod
    amount: int
    currency: str
    trial: bool = False
    payment_id: Optional[str] = None
    client_token: Optional[str] = None


class CreatePaymentIntentRequest(BaseModel):
    amount: int = Field(description="Minor units")
    purpose: PaymentPurpose = PaymentPurpose.RENT
    manual_capture: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)


class CreateSubscriptionRequest(BaseModel):
    tier: Tier
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    use_trial: bool = True
