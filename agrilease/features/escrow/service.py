"""
Escrow manager.

Holds a rental deposit at the payment provider (manual-capture intent) and
settles it exactly once: release captures the funds and activates the
rental, refund cancels the hold and cancels the rental.

Ordering rules:
- create_hold checks the listing is free, calls the provider, then
  re-checks under a listing row lock and writes request/escrow/payment
  in one transaction; if that transaction fails the hold is cancelled at
  the provider before the error propagates.
- release/refund claim the escrow row (pending_action), call the provider
  with no transaction open, then finalize escrow/request/payment/listing in
  one transaction. A provider failure clears the claim.
"""

from datetime import datetime
from typing import List, Optional, Tuple
from uuid import uuid4

from agrilease.core.clock import utc_now
from agrilease.core.config import settings
from agrilease.core.database import get_db_session
from agrilease.core.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PaymentMethodMissingError,
    PermissionError,
    ValidationError,
)
from agrilease.core.logging import log_event
from agrilease.core.metrics import escrow_operations_total
from agrilease.features.billing.provider import PaymentProvider, ProviderError
from agrilease.features.billing.repository import PaymentRepository
from agrilease.features.billing.service import billing_enabled, get_provider, provider_failure
from agrilease.features.escrow.repository import EscrowRepository
from agrilease.features.listings.repository import ListingRepository
from agrilease.features.rentals.repository import RentalRequestRepository
from agrilease.features.rentals.state_machine import transition
from agrilease.features.users.repository import UserRepository
from agrilease.models.escrow import (
    DEFAULT_RELEASE_CONDITIONS,
    Escrow,
    EscrowAction,
    EscrowHold,
    EscrowStatus,
    EscrowView,
)
from agrilease.models.listing import ListingStatus
from agrilease.models.payment import PaymentPurpose, PaymentStatus, PaymentType
from agrilease.models.rental import RentalRequest, RentalStatus, Trigger

# Provider intent status once each action has taken effect
_SETTLED_PROVIDER_STATUS = {
    EscrowAction.RELEASE: "succeeded",
    EscrowAction.REFUND: "canceled",
}


def _load_request(repo: RentalRequestRepository, request_id: str) -> RentalRequest:
    request = repo.get(request_id)
    if request is None:
        raise NotFoundError(f"Rental request {request_id} not found")
    return request


def _load_escrow(escrow_id: str) -> Tuple[Escrow, RentalRequest]:
    with get_db_session() as session:
        escrow = EscrowRepository(session).get(escrow_id)
        if escrow is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        request = _load_request(RentalRequestRepository(session), escrow.request_id)
    return escrow, request


def _ensure_listing_free(session, request: RentalRequest, lock_at: Optional[datetime] = None) -> None:
    """Refuse a hold unless the listing is available and no other request occupies it.

    With ``lock_at`` the listing row is write-locked until the caller commits.
    """
    listings = ListingRepository(session)
    if lock_at is not None:
        free = listings.lock_if_available(request.listing_id, lock_at)
    else:
        listing = listings.get(request.listing_id)
        free = listing is not None and listing.status == ListingStatus.AVAILABLE
    if not free:
        raise InvalidStateTransitionError(
            "Listing is no longer available", current_status=request.status.value
        )
    others = RentalRequestRepository(session).occupying_listing(
        request.listing_id, exclude_request_id=request.request_id
    )
    if others:
        raise InvalidStateTransitionError(
            "Listing already has a deposit in escrow or an active tenancy",
            current_status=request.status.value,
        )


def create_hold(
    request_id: str,
    amount: int,
    actor_id: str,
    release_conditions: Optional[str] = None,
    auto_release_date: Optional[datetime] = None,
) -> EscrowHold:
    """
    Place a deposit hold for an accepted rental request.

    Raises:
        ValidationError: amount below ESCROW_MIN_AMOUNT
        NotFoundError: unknown request
        PermissionError: actor is not a participant
        InvalidStateTransitionError: request is not accepted, or its listing is
            unavailable or already held by another request
        PaymentMethodMissingError: actor has no provider customer
        ProviderUnavailableError / ProviderOperationFailedError: provider problems
    """
    if amount < settings.ESCROW_MIN_AMOUNT:
        raise ValidationError(f"Minimum escrow amount is {settings.ESCROW_MIN_AMOUNT} minor units")

    with get_db_session() as session:
        request = _load_request(RentalRequestRepository(session), request_id)
        actor = UserRepository(session).get(actor_id)

    if not request.is_participant(actor_id):
        raise PermissionError("Not a participant in this rental request")
    if request.status != RentalStatus.ACCEPTED:
        raise InvalidStateTransitionError(
            f"Escrow can only be created for accepted requests (request is {request.status.value})",
            current_status=request.status.value,
        )
    if actor is None or not actor.payment_customer_ref:
        raise PaymentMethodMissingError("Add a payment method before placing an escrow hold")
    with get_db_session() as session:
        _ensure_listing_free(session, request)

    provider = get_provider()
    escrow_id = str(uuid4())
    payment_id = str(uuid4())

    try:
        intent = provider.create_intent(
            amount=amount,
            currency=settings.CURRENCY,
            customer_ref=actor.payment_customer_ref,
            manual_capture=True,
            description=f"Escrow deposit for rental request {request_id}",
            metadata={"escrow_id": escrow_id, "request_id": request_id, "user_id": actor_id},
            idempotency_key=f"escrow-hold-{escrow_id}",
        )
    except ProviderError as e:
        escrow_operations_total.inc(labels={"operation": "hold", "outcome": "provider_error"})
        raise provider_failure(e, "escrow_hold", creation=True)

    now = utc_now()
    try:
        with get_db_session() as session:
            rentals = RentalRequestRepository(session)
            current = _load_request(rentals, request_id)
            _ensure_listing_free(session, current, lock_at=now)
            transition(rentals, current, RentalStatus.IN_ESCROW, Trigger.ESCROW, now)
            escrow = EscrowRepository(session).insert(
                Escrow(
                    escrow_id=escrow_id,
                    request_id=request_id,
                    amount=amount,
                    currency=settings.CURRENCY,
                    status=EscrowStatus.HOLD,
                    provider_hold_ref=intent.provider_ref,
                    release_conditions=release_conditions or DEFAULT_RELEASE_CONDITIONS,
                    auto_release_date=auto_release_date,
                ),
                now,
            )
            PaymentRepository(session).insert(
                payment_id=payment_id,
                user_id=actor_id,
                amount=amount,
                currency=settings.CURRENCY,
                purpose=PaymentPurpose.DEPOSIT,
                type=PaymentType.ONE_TIME,
                provider_ref=intent.provider_ref,
                now=now,
                metadata={"escrow_id": escrow_id, "request_id": request_id},
            )
    except Exception:
        _compensate_hold(provider, intent.provider_ref, escrow_id)
        escrow_operations_total.inc(labels={"operation": "hold", "outcome": "rolled_back"})
        raise

    escrow_operations_total.inc(labels={"operation": "hold", "outcome": "ok"})
    log_event(
        "info",
        "escrow.hold_created",
        user_id=actor_id,
        rental_request_id=request_id,
        escrow_id=escrow_id,
        payment_ref=intent.provider_ref,
        extra={"amount": amount},
    )
    return EscrowHold(escrow=escrow, payment_id=payment_id, client_token=intent.client_token)


def _compensate_hold(provider: PaymentProvider, provider_ref: str, escrow_id: str) -> None:
    try:
        provider.cancel(provider_ref, idempotency_key=f"escrow-compensate-{escrow_id}")
    except ProviderError as e:
        # Orphaned authorization; it lapses at the provider on its own
        log_event(
            "error",
            "escrow.compensation_failed",
            escrow_id=escrow_id,
            payment_ref=provider_ref,
            error_code="provider_operation_failed",
            extra={"error": str(e)},
        )


def release(escrow_id: str, actor_id: str, reason: Optional[str] = None) -> Escrow:
    """Capture the held funds; escrow -> released, request -> active. Landowner only."""
    return _settle(escrow_id, actor_id, EscrowAction.RELEASE, reason)


def refund(escrow_id: str, actor_id: str, reason: Optional[str] = None) -> Escrow:
    """Cancel the hold; escrow -> refunded, request -> cancelled. Either participant."""
    return _settle(escrow_id, actor_id, EscrowAction.REFUND, reason)


def _authorize(action: EscrowAction, request: RentalRequest, actor_id: str) -> None:
    if action == EscrowAction.RELEASE:
        if actor_id != request.land_owner_id:
            raise PermissionError("Only the landowner can release escrow")
    elif not request.is_participant(actor_id):
        raise PermissionError("Not a participant in this rental request")


def _claim(escrow_id: str, action: EscrowAction) -> None:
    now = utc_now()
    with get_db_session() as session:
        repo = EscrowRepository(session)
        if repo.claim(escrow_id, action, now, settings.ESCROW_CLAIM_TTL_SECONDS):
            return
        current = repo.get(escrow_id)
    if current.status != EscrowStatus.HOLD:
        raise InvalidStateTransitionError(
            f"Escrow is already {current.status.value}",
            current_status=current.status.value,
        )
    raise InvalidStateTransitionError(
        f"Another {current.pending_action.value} is in progress for this escrow",
        current_status=current.status.value,
    )


def _provider_settle(provider: PaymentProvider, escrow: Escrow, action: EscrowAction) -> None:
    key = f"escrow-{action.value}-{escrow.escrow_id}"
    try:
        if action == EscrowAction.RELEASE:
            provider.capture(escrow.provider_hold_ref, idempotency_key=key)
        else:
            provider.cancel(escrow.provider_hold_ref, idempotency_key=key)
        return
    except ProviderError as e:
        failure = e

    # A previous attempt may have reached the provider before its local commit failed
    try:
        intent = provider.retrieve(escrow.provider_hold_ref)
    except ProviderError:
        intent = None
    if intent is not None and intent.status == _SETTLED_PROVIDER_STATUS[action]:
        log_event(
            "warning",
            "escrow.provider_already_settled",
            escrow_id=escrow.escrow_id,
            payment_ref=escrow.provider_hold_ref,
            extra={"action": action.value},
        )
        return
    raise failure


def _settle(escrow_id: str, actor_id: str, action: EscrowAction, reason: Optional[str]) -> Escrow:
    escrow, request = _load_escrow(escrow_id)
    _authorize(action, request, actor_id)
    if escrow.status != EscrowStatus.HOLD:
        raise InvalidStateTransitionError(
            f"Escrow is already {escrow.status.value}",
            current_status=escrow.status.value,
        )

    provider = get_provider()
    _claim(escrow_id, action)

    try:
        _provider_settle(provider, escrow, action)
    except ProviderError as e:
        with get_db_session() as session:
            EscrowRepository(session).clear_claim(escrow_id, action, utc_now())
        escrow_operations_total.inc(labels={"operation": action.value, "outcome": "provider_error"})
        log_event(
            "warning",
            f"escrow.{action.value}_failed",
            user_id=actor_id,
            escrow_id=escrow_id,
            payment_ref=escrow.provider_hold_ref,
            error_code="provider_operation_failed",
            extra={"error": str(e), "retryable": e.retryable},
        )
        raise provider_failure(e, f"escrow_{action.value}")

    now = utc_now()
    with get_db_session() as session:
        escrows = EscrowRepository(session)
        if not escrows.finalize(escrow_id, action, now):
            current = escrows.get(escrow_id)
            raise InvalidStateTransitionError(
                f"Escrow {escrow_id} changed during {action.value}",
                current_status=current.status.value,
            )
        rentals = RentalRequestRepository(session)
        current_request = _load_request(rentals, escrow.request_id)
        payments = PaymentRepository(session)
        listings = ListingRepository(session)
        if action == EscrowAction.RELEASE:
            transition(rentals, current_request, RentalStatus.ACTIVE, Trigger.ESCROW, now)
            payments.transition_by_provider_ref(
                escrow.provider_hold_ref,
                (PaymentStatus.PENDING, PaymentStatus.FAILED),
                PaymentStatus.COMPLETED,
                now,
                failure_reason=None,
            )
            leased = listings.compare_and_set_status(
                request.listing_id, (ListingStatus.AVAILABLE,), ListingStatus.LEASED, now
            )
            if not leased:
                # Holds are serialized per listing, so this only fires if that guard is bypassed
                raise InvalidStateTransitionError(
                    "Listing is no longer available to lease",
                    current_status=current_request.status.value,
                )
        else:
            transition(rentals, current_request, RentalStatus.CANCELLED, Trigger.ESCROW, now)
            payments.transition_by_provider_ref(
                escrow.provider_hold_ref,
                (PaymentStatus.PENDING, PaymentStatus.COMPLETED, PaymentStatus.FAILED),
                PaymentStatus.REFUNDED,
                now,
            )
        settled = escrows.get(escrow_id)

    escrow_operations_total.inc(labels={"operation": action.value, "outcome": "ok"})
    log_event(
        "info",
        f"escrow.{settled.status.value}",
        user_id=actor_id,
        rental_request_id=escrow.request_id,
        escrow_id=escrow_id,
        payment_ref=escrow.provider_hold_ref,
        extra={"amount": escrow.amount, "reason": reason},
    )
    return settled


def get_status(escrow_id: str, actor_id: str) -> EscrowView:
    """Participant view of an escrow, with the provider's intent status when reachable."""
    escrow, request = _load_escrow(escrow_id)
    if not request.is_participant(actor_id):
        raise PermissionError("Not a participant in this rental request")

    provider_status = None
    if billing_enabled():
        try:
            provider_status = get_provider().retrieve(escrow.provider_hold_ref).status
        except ProviderError as e:
            log_event(
                "warning",
                "escrow.provider_status_unavailable",
                escrow_id=escrow_id,
                payment_ref=escrow.provider_hold_ref,
                extra={"error": str(e)},
            )

    return EscrowView(
        escrow=escrow,
        request_status=request.status,
        farmer_id=request.farmer_id,
        land_owner_id=request.land_owner_id,
        provider_status=provider_status,
    )


def list_escrows(
    status: Optional[EscrowStatus] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Escrow], int]:
    """Admin listing; returns (page of escrows, total matching)."""
    if page < 1 or limit < 1 or limit > 100:
        raise ValidationError("page must be >= 1 and limit between 1 and 100")
    with get_db_session() as session:
        repo = EscrowRepository(session)
        return repo.list(status=status, page=page, limit=limit), repo.count(status=status)
