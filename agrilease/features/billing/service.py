"""
Payment/subscription orchestrator.

Coordinates:
- Customer management (lazy provider customer per user)
- One-time payment intents and their local Payment mirror
- Subscription creation (trial eligibility, scheme discounts)
- Webhook reconciliation (verify -> parse -> command -> apply, once per event id)

This module is the only writer of a user's subscription fields and payment
customer ref. All Stripe-specific code is in stripe_provider.py. Provider
calls are never made while a DB transaction is open.
"""
import hashlib
import os
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from agrilease.core.clock import utc_now
from agrilease.core.config import settings
from agrilease.core.database import get_db_session
from agrilease.core.errors import (
    AppError,
    ConflictError,
    InvalidSignatureError,
    NotFoundError,
    ProviderOperationFailedError,
    ProviderUnavailableError,
    RegionNotFoundError,
    PlanNotFoundError,
    SubscriptionAlreadyActiveError,
    ValidationError,
)
from agrilease.core.logging import log_event
from agrilease.core.metrics import provider_errors_total, subscriptions_created_total, webhook_events_total
from agrilease.features.billing.events import command_for, map_subscription_status, parse_event
from agrilease.features.billing.provider import (
    PaymentProvider,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderSignatureError,
    ProviderUnreachableError,
)
from agrilease.features.billing.repository import PaymentRepository, ProviderEventRepository
from agrilease.features.billing.stripe_provider import StripeProvider
from agrilease.features.pricing.calculator import apply_discounts, discounts_for
from agrilease.features.pricing.catalog import PlanCatalog
from agrilease.features.users.repository import UserRepository
from agrilease.models.events import (
    CancelSubscription,
    MarkPaymentCompleted,
    MarkPaymentFailed,
    NoOp,
    ProviderEventResult,
    ReconciliationCommand,
    SyncSubscriptionPeriod,
)
from agrilease.models.payment import (
    Payment,
    PaymentHoldResult,
    PaymentPurpose,
    PaymentStatus,
    PaymentType,
    SubscriptionResult,
)
from agrilease.models.plan import BillingPeriod, SubscriptionPlan, Tier
from agrilease.models.pricing import Applicant
from agrilease.models.user import SubscriptionStatus, User


class SubscriptionInProgressError(ConflictError):
    code = "subscription_in_progress"
    retryable = True


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY or os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> PaymentProvider:
    """
    Get the payment provider.

    Raises:
        ProviderUnavailableError: provider not configured
    """
    if not billing_enabled():
        raise ProviderUnavailableError("Payment processing is not configured")
    try:
        return StripeProvider()
    except ProviderNotConfiguredError as e:
        raise ProviderUnavailableError(str(e))


def provider_failure(exc: ProviderError, operation: str, *, creation: bool = False) -> AppError:
    """
    Translate a provider error into the API taxonomy.

    Unreachable/unconfigured during creation is ProviderUnavailable (nothing
    happened, safe to retry); anything else is ProviderOperationFailed with
    the provider's own retryability.
    """
    if isinstance(exc, ProviderNotConfiguredError):
        error: AppError = ProviderUnavailableError(str(exc))
    elif creation and isinstance(exc, ProviderUnreachableError):
        error = ProviderUnavailableError(str(exc))
    else:
        error = ProviderOperationFailedError(str(exc), retryable=exc.retryable)
    provider_errors_total.inc(labels={"operation": operation, "code": error.code})
    return error


def _load_user(user_id: str) -> User:
    with get_db_session() as session:
        user = UserRepository(session).get(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def ensure_customer_ref(user: User, provider: PaymentProvider) -> str:
    """
    Resolve the user's provider customer, creating it on first use.

    The ref is persisted only if none is stored yet; if a concurrent request
    stored one first, that ref wins and is returned.
    """
    if user.payment_customer_ref:
        return user.payment_customer_ref

    try:
        customer_ref = provider.ensure_customer(
            user.user_id,
            email=user.email,
            name=user.full_name,
            metadata={"role": user.role.value, "region": user.region or ""},
        )
    except ProviderError as e:
        raise provider_failure(e, "customer", creation=True)

    with get_db_session() as session:
        repo = UserRepository(session)
        if repo.set_payment_customer_ref(user.user_id, customer_ref):
            log_event("info", "billing.customer_created", user_id=user.user_id, payment_ref=customer_ref)
            return customer_ref
        return repo.get(user.user_id).payment_customer_ref


def create_payment_hold(
    user_id: str,
    amount: int,
    purpose: PaymentPurpose,
    mode: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
    manual_capture: bool = False,
) -> PaymentHoldResult:
    """Create a provider payment intent and its pending local mirror."""
    if amount < settings.PAYMENT_MIN_AMOUNT:
        raise ValidationError(f"Minimum amount is {settings.PAYMENT_MIN_AMOUNT} minor units")

    provider = get_provider()
    user = _load_user(user_id)
    customer_ref = ensure_customer_ref(user, provider)

    payment_id = str(uuid4())
    intent_metadata = {
        "user_id": user_id,
        "payment_id": payment_id,
        "purpose": purpose.value,
        "preferred_mode": mode or "card",
        **(metadata or {}),
    }
    try:
        intent = provider.create_intent(
            amount=amount,
            currency=settings.CURRENCY,
            customer_ref=customer_ref,
            manual_capture=manual_capture,
            description=f"{purpose.value} payment for AgriLease",
            metadata=intent_metadata,
            idempotency_key=f"payment-{payment_id}",
        )
    except ProviderError as e:
        raise provider_failure(e, "payment_intent", creation=True)

    with get_db_session() as session:
        PaymentRepository(session).insert(
            payment_id=payment_id,
            user_id=user_id,
            amount=amount,
            currency=settings.CURRENCY,
            purpose=purpose,
            type=PaymentType.ONE_TIME,
            provider_ref=intent.provider_ref,
            now=utc_now(),
            metadata={"mode": mode or "card", **(metadata or {})},
        )

    log_event(
        "info",
        "billing.payment_intent_created",
        user_id=user_id,
        payment_ref=intent.provider_ref,
        extra={"amount": amount, "purpose": purpose.value},
    )
    return PaymentHoldResult(payment_id=payment_id, provider_ref=intent.provider_ref, client_token=intent.client_token)


def _plan_for_user(catalog: PlanCatalog, region: Optional[str], tier: Tier) -> SubscriptionPlan:
    try:
        return catalog.resolve(region, tier)
    except (RegionNotFoundError, PlanNotFoundError):
        return catalog.national(tier)


def create_subscription(
    user_id: str,
    tier: Tier,
    billing_period: BillingPeriod,
    use_trial: bool,
    catalog: PlanCatalog,
) -> SubscriptionResult:
    """
    Create a recurring subscription for the user.

    Raises:
        SubscriptionAlreadyActiveError: user already active (before any provider call)
        SubscriptionInProgressError: another creation for this user holds the claim
        ProviderUnavailableError / ProviderOperationFailedError: provider problems
    """
    user = _load_user(user_id)
    if user.has_active_subscription:
        raise SubscriptionAlreadyActiveError("User already has an active subscription")
    provider = get_provider()

    now = utc_now()
    with get_db_session() as session:
        repo = UserRepository(session)
        claimed = repo.claim_subscription(user_id, now, settings.SUBSCRIPTION_CLAIM_TTL_SECONDS)
        latest = repo.get(user_id)
    if not claimed:
        if latest is not None and latest.has_active_subscription:
            raise SubscriptionAlreadyActiveError("User already has an active subscription")
        raise SubscriptionInProgressError("A subscription is already being created for this user")

    try:
        user = _retire_previous_subscription(latest, provider)
        result = _create_claimed_subscription(user, tier, billing_period, use_trial, catalog, provider)
    except Exception:
        with get_db_session() as session:
            UserRepository(session).release_subscription_claim(user_id)
        raise

    subscriptions_created_total.inc(labels={"tier": tier.value, "trial": str(result.trial).lower()})
    log_event(
        "info",
        "billing.subscription_created",
        user_id=user_id,
        payment_ref=result.subscription_ref,
        extra={"tier": tier.value, "status": result.status.value, "trial": result.trial},
    )
    return result


def _retire_previous_subscription(user: User, provider: PaymentProvider) -> User:
    """
    Cancel a subscription left behind by an earlier attempt (incomplete or
    past due) before a new one replaces it on the user row.
    """
    previous_ref = user.subscription_ref
    if not previous_ref:
        return user
    try:
        provider.cancel_subscription(previous_ref, idempotency_key=f"cancel-{previous_ref}")
    except ProviderError as e:
        # Already gone at the provider; only the local reference is stale
        if e.provider_code != "resource_missing":
            raise provider_failure(e, "subscription cancel")

    with get_db_session() as session:
        repo = UserRepository(session)
        repo.cancel_subscription(previous_ref)
        user = repo.get(user.user_id)
    log_event("info", "billing.subscription_replaced", user_id=user.user_id, payment_ref=previous_ref)
    return user


def _create_claimed_subscription(
    user: User,
    tier: Tier,
    billing_period: BillingPeriod,
    use_trial: bool,
    catalog: PlanCatalog,
    provider: PaymentProvider,
) -> SubscriptionResult:
    plan = _plan_for_user(catalog, user.region, tier)
    applicant = Applicant(**user.scheme_flags.model_dump())
    amount = apply_discounts(plan.price_for(billing_period), discounts_for(applicant))
    trial = bool(use_trial and not user.free_trial_used and plan.free_trial_days > 0)

    customer_ref = ensure_customer_ref(user, provider)
    payment_id = str(uuid4())
    try:
        subscription = provider.create_subscription(
            customer_ref=customer_ref,
            product_name=f"{plan.name} - {billing_period.value}",
            amount=amount,
            currency=settings.CURRENCY,
            interval="year" if billing_period == BillingPeriod.YEARLY else "month",
            trial_days=plan.free_trial_days if trial else None,
            metadata={
                "user_id": user.user_id,
                "plan_id": plan.plan_id,
                "tier": tier.value,
                "billing_period": billing_period.value,
            },
            idempotency_key=f"subscription-{payment_id}",
        )
    except ProviderError as e:
        raise provider_failure(e, "subscription", creation=True)

    status = SubscriptionStatus.ACTIVE if trial else (
        map_subscription_status(subscription.status) or SubscriptionStatus.INACTIVE
    )
    with get_db_session() as session:
        UserRepository(session).record_subscription(
            user.user_id,
            tier=tier,
            status=status,
            subscription_ref=subscription.subscription_ref,
            period_start=subscription.period_start,
            period_end=subscription.period_end,
            trial_used=trial,
        )
        PaymentRepository(session).insert(
            payment_id=payment_id,
            user_id=user.user_id,
            amount=amount,
            currency=settings.CURRENCY,
            purpose=PaymentPurpose.SUBSCRIPTION,
            type=PaymentType.RECURRING,
            provider_ref=subscription.subscription_ref,
            invoice_ref=subscription.invoice_ref,
            now=utc_now(),
            metadata={
                "plan_id": plan.plan_id,
                "tier": tier.value,
                "billing_period": billing_period.value,
                "trial": trial,
            },
        )

    return SubscriptionResult(
        subscription_ref=subscription.subscription_ref,
        status=status,
        tier=tier,
        billing_period=billing_period,
        amount=amount,
        currency=settings.CURRENCY,
        trial=trial,
        payment_id=payment_id,
        client_token=subscription.client_token,
    )


def apply_command(session, command: ReconciliationCommand) -> bool:
    """Apply a reconciliation command inside the caller's transaction. True if state changed."""
    now = utc_now()
    payments = PaymentRepository(session)
    users = UserRepository(session)

    if isinstance(command, MarkPaymentCompleted):
        moved = payments.transition_by_provider_ref(
            command.provider_ref,
            (PaymentStatus.PENDING, PaymentStatus.FAILED),
            PaymentStatus.COMPLETED,
            now,
            failure_reason=None,
        )
        return moved > 0

    if isinstance(command, MarkPaymentFailed):
        # Only pending payments can fail; a completed payment stays completed
        moved = payments.transition_by_provider_ref(
            command.provider_ref,
            (PaymentStatus.PENDING,),
            PaymentStatus.FAILED,
            now,
            failure_reason=command.reason,
        )
        return moved > 0

    if isinstance(command, SyncSubscriptionPeriod):
        changed = users.sync_subscription(
            command.subscription_ref,
            status=command.status,
            period_start=command.period_start,
            period_end=command.period_end,
        )
        if command.invoice_ref:
            changed = _reconcile_invoice(payments, users, command, now) or changed
        return changed

    if isinstance(command, CancelSubscription):
        return users.cancel_subscription(command.subscription_ref)

    if isinstance(command, NoOp):
        return False

    raise ValueError(f"Unknown reconciliation command: {command!r}")


def _reconcile_invoice(payments: PaymentRepository, users: UserRepository, command: SyncSubscriptionPeriod, now) -> bool:
    """Complete the invoice's mirror, or record a renewal invoice that has none yet."""
    if payments.complete_invoice(command.invoice_ref, now):
        return True
    if payments.get_by_invoice_ref(command.invoice_ref) is not None:
        return False
    user = users.get_by_subscription_ref(command.subscription_ref)
    if user is None:
        return False
    payments.insert(
        payment_id=str(uuid4()),
        user_id=user.user_id,
        amount=command.amount_paid or 0,
        currency=command.currency or settings.CURRENCY,
        purpose=PaymentPurpose.SUBSCRIPTION,
        type=PaymentType.RECURRING,
        provider_ref=command.subscription_ref,
        invoice_ref=command.invoice_ref,
        status=PaymentStatus.COMPLETED,
        now=now,
        metadata={"renewal": True},
    )
    return True


def handle_provider_event(body: bytes, signature: Optional[str]) -> ProviderEventResult:
    """
    Verify, parse and reconcile one provider webhook event.

    The ledger row and the command's effects commit in one transaction, so a
    replayed event id is a no-op and a failed application can be retried by
    the provider.
    """
    provider = get_provider()
    try:
        verified = provider.verify_event(body, signature)
    except ProviderSignatureError as e:
        webhook_events_total.inc(labels={"kind": "unknown", "outcome": "invalid_signature"})
        raise InvalidSignatureError(str(e))
    except ProviderNotConfiguredError as e:
        raise ProviderUnavailableError(str(e))

    event = parse_event(verified)
    command = command_for(event)
    payload_hash = hashlib.sha256(body).hexdigest()

    try:
        with get_db_session() as session:
            ledger = ProviderEventRepository(session)
            if ledger.exists(event.event_id):
                duplicate = True
                applied = False
            else:
                duplicate = False
                ledger.record(event.event_id, event.event_type, payload_hash, command.name, utc_now())
                applied = apply_command(session, command)
    except IntegrityError:
        # Concurrent delivery of the same event id won the insert
        duplicate = True
        applied = False

    outcome = "duplicate" if duplicate else ("applied" if applied else "noop")
    webhook_events_total.inc(labels={"kind": event.kind, "outcome": outcome})
    log_event(
        "info",
        "billing.webhook_processed",
        event_type=event.event_type,
        extra={"event_id": event.event_id, "command": command.name, "outcome": outcome},
    )
    return ProviderEventResult(
        event_id=event.event_id,
        event_type=event.event_type,
        command=command.name,
        duplicate=duplicate,
        applied=applied,
    )


def get_payment_history(user_id: str, limit: int = 100) -> List[Payment]:
    with get_db_session() as session:
        return PaymentRepository(session).list_for_user(user_id, limit=limit)
