"""
Stripe payment provider implementation.

Implements PaymentProvider with the Stripe API: manual-capture payment
intents for escrow holds, inline-priced subscriptions, and webhook signature
verification. All amounts are minor units (paise for INR).
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from agrilease.core.config import settings
from agrilease.features.billing.provider import (
    ProviderError,
    ProviderIntent,
    ProviderNotConfiguredError,
    ProviderSignatureError,
    ProviderSubscription,
    ProviderUnreachableError,
    VerifiedEvent,
)

STRIPE_API_VERSION = "2024-06-20"
WEBHOOK_TOLERANCE_SECONDS = 300


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _translate(exc: Exception, operation: str) -> ProviderError:
    """Map a Stripe exception onto the provider error taxonomy."""
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ProviderUnreachableError(f"Stripe {operation} unreachable: {exc}")
    if isinstance(exc, stripe.StripeError):
        status = getattr(exc, "http_status", None) or 0
        code = getattr(exc, "code", None)
        # 5xx and lock conflicts are transient; card/invalid-request errors are not
        retryable = status >= 500 or status == 409
        return ProviderError(f"Stripe {operation} failed: {exc}", retryable=retryable, provider_code=code)
    return ProviderError(f"Stripe {operation} failed: {exc}", retryable=False)


def _intent(obj: Any) -> ProviderIntent:
    return ProviderIntent(
        provider_ref=obj["id"],
        status=obj.get("status") or "unknown",
        client_token=obj.get("client_secret"),
        amount=obj.get("amount"),
    )


def subscription_period(data: Dict[str, Any]):
    """Period bounds live on the subscription or, in newer API versions, on its first item."""
    start = data.get("current_period_start")
    end = data.get("current_period_end")
    if start is None or end is None:
        items = (data.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return _ts(start), _ts(end)


class StripeProvider:
    """Stripe implementation of the PaymentProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise ProviderNotConfiguredError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.api_version = STRIPE_API_VERSION
        stripe.max_network_retries = settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        stripe.default_http_client = stripe.RequestsClient(
            timeout=timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS
        )

    def ensure_customer(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        params: Dict[str, Any] = {"metadata": {"user_id": user_id, **(metadata or {})}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        try:
            customer = stripe.Customer.create(idempotency_key=f"customer-{user_id}", **params)
        except Exception as e:
            raise _translate(e, "customer creation")
        return customer["id"]

    def create_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_ref: str,
        manual_capture: bool,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderIntent:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "customer": customer_ref,
            "payment_method_types": ["card"],
            "description": description,
            "metadata": metadata or {},
        }
        if manual_capture:
            params["capture_method"] = "manual"
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except Exception as e:
            raise _translate(e, "payment intent creation")
        return _intent(intent)

    def capture(self, provider_ref: str, idempotency_key: Optional[str] = None) -> ProviderIntent:
        try:
            intent = stripe.PaymentIntent.capture(
                provider_ref, idempotency_key=idempotency_key or f"capture-{provider_ref}"
            )
        except Exception as e:
            raise _translate(e, "capture")
        return _intent(intent)

    def cancel(self, provider_ref: str, idempotency_key: Optional[str] = None) -> ProviderIntent:
        try:
            intent = stripe.PaymentIntent.cancel(
                provider_ref, idempotency_key=idempotency_key or f"cancel-{provider_ref}"
            )
        except Exception as e:
            raise _translate(e, "cancel")
        return _intent(intent)

    def retrieve(self, provider_ref: str) -> ProviderIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(provider_ref)
        except Exception as e:
            raise _translate(e, "retrieve")
        return _intent(intent)

    def create_subscription(
        self,
        *,
        customer_ref: str,
        product_name: str,
        amount: int,
        currency: str,
        interval: str,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderSubscription:
        try:
            product = stripe.Product.create(name=product_name, metadata=metadata or {})
            params: Dict[str, Any] = {
                "customer": customer_ref,
                "items": [{
                    "price_data": {
                        "currency": currency.lower(),
                        "product": product["id"],
                        "unit_amount": amount,
                        "recurring": {"interval": interval},
                    },
                }],
                "payment_behavior": "default_incomplete",
                "payment_settings": {"save_default_payment_method": "on_subscription"},
                "expand": ["latest_invoice.payment_intent"],
                "metadata": metadata or {},
            }
            if trial_days:
                params["trial_period_days"] = trial_days
            if idempotency_key:
                params["idempotency_key"] = idempotency_key
            subscription = stripe.Subscription.create(**params)
        except Exception as e:
            raise _translate(e, "subscription creation")

        invoice = subscription.get("latest_invoice")
        invoice_ref = None
        client_token = None
        if isinstance(invoice, str):
            invoice_ref = invoice
        elif invoice:
            invoice_ref = invoice.get("id")
            payment_intent = invoice.get("payment_intent")
            if payment_intent and not isinstance(payment_intent, str):
                client_token = payment_intent.get("client_secret")

        period_start, period_end = subscription_period(subscription)
        return ProviderSubscription(
            subscription_ref=subscription["id"],
            status=subscription.get("status") or "incomplete",
            client_token=client_token,
            invoice_ref=invoice_ref,
            period_start=period_start,
            period_end=period_end,
        )

    def cancel_subscription(self, subscription_ref: str, idempotency_key: Optional[str] = None) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.cancel(
                subscription_ref, idempotency_key=idempotency_key or f"cancel-{subscription_ref}"
            )
        except Exception as e:
            raise _translate(e, "subscription cancel")
        return ProviderSubscription(
            subscription_ref=subscription["id"],
            status=subscription.get("status") or "canceled",
        )

    def verify_event(self, body: bytes, signature: Optional[str]) -> VerifiedEvent:
        if not self.webhook_secret:
            raise ProviderNotConfiguredError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise ProviderSignatureError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise ProviderSignatureError(f"Invalid signature: {e}")
        except (UnicodeDecodeError, ValueError) as e:
            raise ProviderSignatureError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ProviderSignatureError("Event is missing id or type")
        return VerifiedEvent(
            event_id=event["id"],
            event_type=event["type"],
            data=(event.get("data") or {}).get("object") or {},
        )
