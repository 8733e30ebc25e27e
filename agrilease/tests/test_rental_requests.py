"""
Rental request lifecycle tests: transition table, participant rules, terms lock.
"""
from datetime import date

import pytest

from agrilease.core.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionError,
    TermsLockedError,
    ValidationError,
)
from agrilease.core.metrics import rental_transitions_total
from agrilease.features.listings.service import get_listing
from agrilease.features.rentals import service as rentals
from agrilease.features.rentals.state_machine import TRANSITIONS, can_transition, check_transition
from agrilease.models.listing import ListingStatus
from agrilease.models.rental import ContractTermsUpdate, ProposedTerms, RentalRequestCreate, RentalStatus, Trigger


def test_user_trigger_never_enters_or_leaves_escrow():
    for (from_status, to_status), triggers in TRANSITIONS.items():
        if RentalStatus.IN_ESCROW in (from_status, to_status):
            assert triggers == frozenset({Trigger.ESCROW}), (from_status, to_status)


def test_terminal_states_have_no_outgoing_edges():
    terminal = {RentalStatus.REJECTED, RentalStatus.COMPLETED, RentalStatus.CANCELLED}
    assert not [edge for edge in TRANSITIONS if edge[0] in terminal]


def test_cancel_in_escrow_points_to_refund():
    assert not can_transition(RentalStatus.IN_ESCROW, RentalStatus.CANCELLED, Trigger.USER)
    with pytest.raises(InvalidStateTransitionError) as exc:
        check_transition(RentalStatus.IN_ESCROW, RentalStatus.CANCELLED, Trigger.USER)
    assert "escrow/refund" in exc.value.message
    assert exc.value.current_status == "in_escrow"


def test_create_request_starts_pending(marketplace, pending_request):
    assert pending_request.status == RentalStatus.PENDING
    assert pending_request.farmer_id == marketplace.farmer.user_id
    assert pending_request.land_owner_id == marketplace.owner.user_id
    assert pending_request.final_terms is None


def test_owner_cannot_request_own_listing(marketplace):
    with pytest.raises(ValidationError):
        rentals.create_request(
            marketplace.owner.user_id,
            RentalRequestCreate(
                listing_id=marketplace.listing.listing_id,
                proposed_terms=ProposedTerms(rent_per_acre=100, duration_months=6),
            ),
        )


def test_request_for_unknown_listing(marketplace):
    with pytest.raises(NotFoundError):
        rentals.create_request(
            marketplace.farmer.user_id,
            RentalRequestCreate(listing_id="missing", proposed_terms=ProposedTerms(rent_per_acre=100, duration_months=6)),
        )


def test_only_landowner_accepts(marketplace, pending_request):
    with pytest.raises(PermissionError):
        rentals.accept_request(pending_request.request_id, marketplace.farmer.user_id)

    accepted = rentals.accept_request(pending_request.request_id, marketplace.owner.user_id)
    assert accepted.status == RentalStatus.ACCEPTED
    assert accepted.responded_at is not None
    assert rental_transitions_total.value(
        {"from_status": "pending", "to_status": "accepted", "trigger": "user"}
    ) == 1


def test_accept_twice_is_invalid(marketplace, accepted_request):
    with pytest.raises(InvalidStateTransitionError) as exc:
        rentals.accept_request(accepted_request.request_id, marketplace.owner.user_id)
    assert exc.value.current_status == "accepted"


def test_reject_requires_reason(marketplace, pending_request):
    with pytest.raises(ValidationError):
        rentals.reject_request(pending_request.request_id, marketplace.owner.user_id, "   ")

    rejected = rentals.reject_request(pending_request.request_id, marketplace.owner.user_id, "Plot already promised")
    assert rejected.status == RentalStatus.REJECTED
    assert rejected.rejection_reason == "Plot already promised"


def test_either_party_cancels_before_escrow(marketplace, accepted_request):
    cancelled = rentals.cancel_request(accepted_request.request_id, marketplace.farmer.user_id)
    assert cancelled.status == RentalStatus.CANCELLED


def test_outsider_cannot_view_or_cancel(make_user, pending_request):
    make_user("stranger")
    with pytest.raises(PermissionError):
        rentals.get_request(pending_request.request_id, "stranger")
    with pytest.raises(PermissionError):
        rentals.cancel_request(pending_request.request_id, "stranger")


def test_lists_by_participant_role(marketplace, pending_request):
    assert [r.request_id for r in rentals.list_requests_for_farmer(marketplace.farmer.user_id)] == [
        pending_request.request_id
    ]
    assert rentals.list_requests_for_owner(marketplace.owner.user_id, RentalStatus.ACCEPTED) == []


def test_complete_requires_active(marketplace, accepted_request):
    with pytest.raises(InvalidStateTransitionError):
        rentals.complete_request(accepted_request.request_id, marketplace.owner.user_id)


class TestContractTerms:
    def test_terms_not_editable_while_pending(self, marketplace, pending_request):
        with pytest.raises(InvalidStateTransitionError):
            rentals.set_contract_terms(
                pending_request.request_id,
                marketplace.owner.user_id,
                ContractTermsUpdate(rent_per_acre=2900000),
            )

    def test_only_owner_sets_terms(self, marketplace, accepted_request):
        with pytest.raises(PermissionError):
            rentals.set_contract_terms(
                accepted_request.request_id,
                marketplace.farmer.user_id,
                ContractTermsUpdate(rent_per_acre=2900000),
            )

    def test_terms_editable_until_start_date_then_locked(self, marketplace, accepted_request):
        owner = marketplace.owner.user_id
        draft = rentals.set_contract_terms(
            accepted_request.request_id, owner, ContractTermsUpdate(contract_terms="Water share 50/50")
        )
        assert draft.final_terms.contract_terms == "Water share 50/50"
        assert not draft.final_terms.locked

        locked = rentals.set_contract_terms(
            accepted_request.request_id,
            owner,
            ContractTermsUpdate(contract_start_date=date(2026, 11, 1), contract_end_date=date(2027, 10, 31)),
        )
        assert locked.final_terms.locked
        # Rent defaults to the proposed rent when the contract starts without one
        assert locked.final_terms.rent_per_acre == 2800000
        assert locked.final_terms.contract_terms == "Water share 50/50"

        with pytest.raises(TermsLockedError):
            rentals.set_contract_terms(accepted_request.request_id, owner, ContractTermsUpdate(rent_per_acre=1))

    def test_end_date_must_follow_start(self, marketplace, accepted_request):
        with pytest.raises(ValidationError):
            rentals.set_contract_terms(
                accepted_request.request_id,
                marketplace.owner.user_id,
                ContractTermsUpdate(contract_start_date=date(2026, 11, 1), contract_end_date=date(2026, 11, 1)),
            )

    def test_empty_update_rejected(self, marketplace, accepted_request):
        with pytest.raises(ValidationError):
            rentals.set_contract_terms(accepted_request.request_id, marketplace.owner.user_id, ContractTermsUpdate())


def test_listing_stays_available_until_release(marketplace, accepted_request):
    assert get_listing(marketplace.listing.listing_id).status == ListingStatus.AVAILABLE
