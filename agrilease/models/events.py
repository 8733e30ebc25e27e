"""
agrilease/models/events.py

Provider webhook events as a tagged variant, and the reconciliation
commands their handlers produce.

Parsing (raw provider payload -> variant) lives in features/billing/events.py.
Each variant maps to exactly one command; commands are applied by the
billing service inside the same transaction that records the event id.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from agrilease.models.user import SubscriptionStatus


class _ProviderEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str


class PaymentSucceeded(_ProviderEventBase):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    provider_ref: str
    amount: Optional[int] = None


class PaymentFailed(_ProviderEventBase):
    kind: Literal["payment_failed"] = "payment_failed"
    provider_ref: str
    reason: str = "Payment failed"


class InvoicePaid(_ProviderEventBase):
    kind: Literal["invoice_paid"] = "invoice_paid"
    subscription_ref: Optional[str] = None
    invoice_ref: str
    customer_ref: Optional[str] = None
    amount_paid: int = 0
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SubscriptionUpdated(_ProviderEventBase):
    kind: Literal["subscription_updated"] = "subscription_updated"
    subscription_ref: str
    provider_status: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SubscriptionCancelled(_ProviderEventBase):
    kind: Literal["subscription_cancelled"] = "subscription_cancelled"
    subscription_ref: str


class UnhandledEvent(_ProviderEventBase):
    kind: Literal["unhandled"] = "unhandled"


ProviderEvent = Annotated[
    Union[
        PaymentSucceeded,
        PaymentFailed,
        InvoicePaid,
        SubscriptionUpdated,
        SubscriptionCancelled,
        UnhandledEvent,
    ],
    Field(discriminator="kind"),
]


class _CommandBase(BaseModel):
    model_config = ConfigDict(frozen=True)


class MarkPaymentCompleted(_CommandBase):
    name: Literal["mark_payment_completed"] = "mark_payment_completed"
    provider_ref: str


class MarkPaymentFailed(_CommandBase):
    name: Literal["mark_payment_failed"] = "mark_payment_failed"
    provider_ref: str
    reason: str


class SyncSubscriptionPeriod(_CommandBase):
    name: Literal["sync_subscription_period"] = "sync_subscription_period"
    subscription_ref: str
    status: Optional[SubscriptionStatus] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    invoice_ref: Optional[str] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None


class CancelSubscription(_CommandBase):
    name: Literal["cancel_subscription"] = "cancel_subscription"
    subscription_ref: str


class NoOp(_CommandBase):
    name: Literal["noop"] = "noop"
    reason: str = "unhandled"


ReconciliationCommand = Union[
    MarkPaymentCompleted,
    MarkPaymentFailed,
    SyncSubscriptionPeriod,
    CancelSubscription,
    NoOp,
]


class ProviderEventResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    command: str
    duplicate: bool = False
    applied: bool = False
