"""
Rental request service.

User-driven operations on the rental request lifecycle. Escrow-driven edges
(accepted -> in_escrow -> active | cancelled) live in features/escrow.

Final terms become immutable once contract_start_date is set; before that
the landowner may revise them while the request is accepted, in escrow, or
active.
"""

from typing import List, Optional
from uuid import uuid4

from agrilease.core.clock import utc_now
from agrilease.core.database import get_db_session
from agrilease.core.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionError,
    TermsLockedError,
    ValidationError,
)
from agrilease.core.logging import log_event
from agrilease.features.listings.repository import ListingRepository
from agrilease.features.rentals.repository import RentalRequestRepository
from agrilease.features.rentals.state_machine import transition
from agrilease.models.listing import ListingStatus
from agrilease.models.rental import (
    ContractTermsUpdate,
    FinalTerms,
    RentalRequest,
    RentalRequestCreate,
    RentalStatus,
    Trigger,
)

TERMS_EDITABLE_STATUSES = (RentalStatus.ACCEPTED, RentalStatus.IN_ESCROW, RentalStatus.ACTIVE)


def _load(repo: RentalRequestRepository, request_id: str) -> RentalRequest:
    request = repo.get(request_id)
    if request is None:
        raise NotFoundError(f"Rental request {request_id} not found")
    return request


def _require_owner(request: RentalRequest, actor_id: str, action: str) -> None:
    if actor_id != request.land_owner_id:
        raise PermissionError(f"Only the landowner can {action} this request")


def _require_participant(request: RentalRequest, actor_id: str) -> None:
    if not request.is_participant(actor_id):
        raise PermissionError("Not a participant in this rental request")


def create_request(farmer_id: str, data: RentalRequestCreate) -> RentalRequest:
    with get_db_session() as session:
        listing = ListingRepository(session).get(data.listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {data.listing_id} not found")
        if listing.status != ListingStatus.AVAILABLE:
            raise ValidationError(f"Listing is not available (status {listing.status.value})")
        if listing.owner_id == farmer_id:
            raise ValidationError("Landowners cannot request their own listing")

        request = RentalRequest(
            request_id=str(uuid4()),
            listing_id=listing.listing_id,
            farmer_id=farmer_id,
            land_owner_id=listing.owner_id,
            status=RentalStatus.PENDING,
            proposed_terms=data.proposed_terms,
        )
        created = RentalRequestRepository(session).insert(request, utc_now())

    log_event(
        "info",
        "rental.created",
        user_id=farmer_id,
        rental_request_id=created.request_id,
        extra={"listing_id": created.listing_id},
    )
    return created


def get_request(request_id: str, actor_id: str) -> RentalRequest:
    with get_db_session() as session:
        request = _load(RentalRequestRepository(session), request_id)
    _require_participant(request, actor_id)
    return request


def list_requests_for_farmer(farmer_id: str, status: Optional[RentalStatus] = None) -> List[RentalRequest]:
    with get_db_session() as session:
        return RentalRequestRepository(session).list_for_farmer(farmer_id, status)


def list_requests_for_owner(owner_id: str, status: Optional[RentalStatus] = None) -> List[RentalRequest]:
    with get_db_session() as session:
        return RentalRequestRepository(session).list_for_owner(owner_id, status)


def accept_request(request_id: str, actor_id: str) -> RentalRequest:
    with get_db_session() as session:
        repo = RentalRequestRepository(session)
        request = _load(repo, request_id)
        _require_owner(request, actor_id, "accept")
        now = utc_now()
        return transition(repo, request, RentalStatus.ACCEPTED, Trigger.USER, now, responded_at=now)


def reject_request(request_id: str, actor_id: str, reason: str) -> RentalRequest:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    with get_db_session() as session:
        repo = RentalRequestRepository(session)
        request = _load(repo, request_id)
        _require_owner(request, actor_id, "reject")
        now = utc_now()
        return transition(
            repo,
            request,
            RentalStatus.REJECTED,
            Trigger.USER,
            now,
            responded_at=now,
            rejection_reason=reason,
        )


def cancel_request(request_id: str, actor_id: str) -> RentalRequest:
    with get_db_session() as session:
        repo = RentalRequestRepository(session)
        request = _load(repo, request_id)
        _require_participant(request, actor_id)
        return transition(repo, request, RentalStatus.CANCELLED, Trigger.USER, utc_now())


def complete_request(request_id: str, actor_id: Optional[str] = None) -> RentalRequest:
    """End-of-term completion. actor_id=None means a system job drives it."""
    with get_db_session() as session:
        repo = RentalRequestRepository(session)
        request = _load(repo, request_id)
        trigger = Trigger.SYSTEM
        if actor_id is not None:
            _require_participant(request, actor_id)
            trigger = Trigger.USER
        now = utc_now()
        completed = transition(repo, request, RentalStatus.COMPLETED, trigger, now, completed_at=now)
        if not repo.occupying_listing(request.listing_id, exclude_request_id=request_id):
            ListingRepository(session).compare_and_set_status(
                request.listing_id, (ListingStatus.LEASED,), ListingStatus.AVAILABLE, now
            )
        return completed


def set_contract_terms(request_id: str, actor_id: str, update: ContractTermsUpdate) -> RentalRequest:
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("No contract terms supplied")

    with get_db_session() as session:
        repo = RentalRequestRepository(session)
        request = _load(repo, request_id)
        _require_owner(request, actor_id, "set contract terms for")

        current = request.final_terms or FinalTerms()
        if current.locked:
            raise TermsLockedError("Final terms are locked once the contract start date is set")
        if request.status not in TERMS_EDITABLE_STATUSES:
            raise InvalidStateTransitionError(
                f"Contract terms can only be set once accepted (status {request.status.value})",
                current_status=request.status.value,
            )

        merged = current.model_dump()
        merged.update(changes)
        if merged.get("contract_start_date") is not None and merged.get("rent_per_acre") is None:
            merged["rent_per_acre"] = request.proposed_terms.rent_per_acre
        start, end = merged.get("contract_start_date"), merged.get("contract_end_date")
        if start is not None and end is not None and end <= start:
            raise ValidationError("contract_end_date must be after contract_start_date")
        final_terms = FinalTerms(**merged)

        if not repo.set_final_terms_if_unlocked(request_id, TERMS_EDITABLE_STATUSES, final_terms, utc_now()):
            latest = _load(repo, request_id)
            if latest.final_terms is not None and latest.final_terms.locked:
                raise TermsLockedError("Final terms are locked once the contract start date is set")
            raise InvalidStateTransitionError(
                f"Contract terms cannot be set in status {latest.status.value}",
                current_status=latest.status.value,
            )
        updated = repo.get(request_id)

    log_event(
        "info",
        "rental.terms_updated",
        user_id=actor_id,
        rental_request_id=request_id,
        extra={"locked": final_terms.locked},
    )
    return updated
