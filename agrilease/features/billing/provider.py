"""
Payment provider protocol.

Defines the interface the escrow manager and billing orchestrator use to
reach the payment processor: customers, manual-capture holds, capture,
cancel, recurring subscriptions and signed webhook events. Business logic
never imports a concrete provider.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol


@dataclass
class ProviderIntent:
    """A provider payment intent (hold or one-time charge)."""
    provider_ref: str
    status: str  # requires_payment_method, requires_capture, succeeded, canceled, ...
    client_token: Optional[str] = None
    amount: Optional[int] = None


@dataclass
class ProviderSubscription:
    subscription_ref: str
    status: str  # trialing, active, incomplete, past_due, canceled, ...
    client_token: Optional[str] = None
    invoice_ref: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass
class VerifiedEvent:
    """A webhook event whose signature has been checked."""
    event_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Every call is blocking network I/O with a bounded timeout. Callers must
    not hold a DB transaction or lock across these calls.
    """

    def ensure_customer(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create a provider customer; returns its reference."""
        ...

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
        """Create a payment intent. manual_capture=True authorizes funds without moving them."""
        ...

    def capture(self, provider_ref: str, idempotency_key: Optional[str] = None) -> ProviderIntent:
        """Capture a held intent (funds move)."""
        ...

    def cancel(self, provider_ref: str, idempotency_key: Optional[str] = None) -> ProviderIntent:
        """Cancel a held intent (authorization released)."""
        ...

    def retrieve(self, provider_ref: str) -> ProviderIntent:
        ...

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
        """Create a recurring subscription in default-incomplete mode."""
        ...

    def cancel_subscription(self, subscription_ref: str, idempotency_key: Optional[str] = None) -> ProviderSubscription:
        """Cancel a subscription immediately; no further invoices are raised."""
        ...

    def verify_event(self, body: bytes, signature: Optional[str]) -> VerifiedEvent:
        """
        Verify the signature over the raw body and decode the event.

        Raises:
            ProviderSignatureError: signature missing, wrong or stale
        """
        ...


class ProviderError(Exception):
    """Provider call failed. retryable distinguishes transient from terminal causes."""

    def __init__(self, message: str, *, retryable: bool = False, provider_code: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.provider_code = provider_code


class ProviderUnreachableError(ProviderError):
    """Network failure or timeout talking to the provider."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class ProviderNotConfiguredError(ProviderError):
    pass


class ProviderSignatureError(ProviderError):
    pass
