"""
Webhook event parsing and per-variant handlers.

parse_event turns a verified provider event into one ProviderEvent variant.
Each variant has exactly one handler, and each handler is pure: it returns
the reconciliation command to apply and never touches storage. Signature
verification and event-id idempotency are applied around these handlers by
billing.service.handle_provider_event.
"""

from typing import Any, Callable, Dict, Optional

from agrilease.features.billing.provider import VerifiedEvent
from agrilease.features.billing.stripe_provider import subscription_period
from agrilease.models.events import (
    CancelSubscription,
    InvoicePaid,
    MarkPaymentCompleted,
    MarkPaymentFailed,
    NoOp,
    PaymentFailed,
    PaymentSucceeded,
    ProviderEvent,
    ReconciliationCommand,
    SubscriptionCancelled,
    SubscriptionUpdated,
    SyncSubscriptionPeriod,
    UnhandledEvent,
)
from agrilease.models.user import SubscriptionStatus

_PROVIDER_STATUS_MAP = {
    "trialing": SubscriptionStatus.ACTIVE,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.INACTIVE,
    "incomplete_expired": SubscriptionStatus.INACTIVE,
    "paused": SubscriptionStatus.INACTIVE,
}


def map_subscription_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    if not provider_status:
        return None
    return _PROVIDER_STATUS_MAP.get(provider_status)


def _ref(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


def _failure_reason(data: Dict[str, Any]) -> str:
    error = data.get("last_payment_error") or {}
    return error.get("message") or error.get("code") or "Payment failed"


def parse_event(event: VerifiedEvent) -> ProviderEvent:
    data = event.data
    base = {"event_id": event.event_id, "event_type": event.event_type}
    ref = data.get("id")
    # Nothing to reconcile against without the object id
    if not ref:
        return UnhandledEvent(**base)

    if event.event_type == "payment_intent.succeeded":
        return PaymentSucceeded(**base, provider_ref=ref, amount=data.get("amount_received"))

    if event.event_type == "payment_intent.payment_failed":
        return PaymentFailed(**base, provider_ref=ref, reason=_failure_reason(data))

    if event.event_type == "invoice.payment_succeeded":
        lines = (data.get("lines") or {}).get("data") or []
        period = lines[0].get("period") if lines else None
        period_start = period.get("start") if period else None
        period_end = period.get("end") if period else None
        start, end = subscription_period({"current_period_start": period_start, "current_period_end": period_end})
        return InvoicePaid(
            **base,
            subscription_ref=_ref(data.get("subscription")),
            invoice_ref=ref,
            customer_ref=_ref(data.get("customer")),
            amount_paid=data.get("amount_paid") or 0,
            currency=(data.get("currency") or "").upper() or None,
            period_start=start,
            period_end=end,
        )

    if event.event_type in ("customer.subscription.updated", "customer.subscription.created"):
        start, end = subscription_period(data)
        return SubscriptionUpdated(
            **base,
            subscription_ref=ref,
            provider_status=data.get("status") or "",
            period_start=start,
            period_end=end,
        )

    if event.event_type == "customer.subscription.deleted":
        return SubscriptionCancelled(**base, subscription_ref=ref)

    return UnhandledEvent(**base)


def on_payment_succeeded(event: PaymentSucceeded) -> ReconciliationCommand:
    return MarkPaymentCompleted(provider_ref=event.provider_ref)


def on_payment_failed(event: PaymentFailed) -> ReconciliationCommand:
    return MarkPaymentFailed(provider_ref=event.provider_ref, reason=event.reason)


def on_invoice_paid(event: InvoicePaid) -> ReconciliationCommand:
    if not event.subscription_ref:
        return NoOp(reason="invoice without subscription")
    return SyncSubscriptionPeriod(
        subscription_ref=event.subscription_ref,
        status=SubscriptionStatus.ACTIVE,
        period_start=event.period_start,
        period_end=event.period_end,
        invoice_ref=event.invoice_ref,
        amount_paid=event.amount_paid,
        currency=event.currency,
    )


def on_subscription_updated(event: SubscriptionUpdated) -> ReconciliationCommand:
    status = map_subscription_status(event.provider_status)
    if status == SubscriptionStatus.CANCELLED:
        return CancelSubscription(subscription_ref=event.subscription_ref)
    return SyncSubscriptionPeriod(
        subscription_ref=event.subscription_ref,
        status=status,
        period_start=event.period_start,
        period_end=event.period_end,
    )


def on_subscription_cancelled(event: SubscriptionCancelled) -> ReconciliationCommand:
    return CancelSubscription(subscription_ref=event.subscription_ref)


def on_unhandled(event: UnhandledEvent) -> ReconciliationCommand:
    return NoOp(reason=f"unhandled event type {event.event_type}")


HANDLERS: Dict[str, Callable[[Any], ReconciliationCommand]] = {
    "payment_succeeded": on_payment_succeeded,
    "payment_failed": on_payment_failed,
    "invoice_paid": on_invoice_paid,
    "subscription_updated": on_subscription_updated,
    "subscription_cancelled": on_subscription_cancelled,
    "unhandled": on_unhandled,
}


def command_for(event: ProviderEvent) -> ReconciliationCommand:
    return HANDLERS[event.kind](event)
