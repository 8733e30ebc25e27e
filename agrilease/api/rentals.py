"""
Rental request API.

Farmers request a listing; the landowner accepts or rejects. Escrow-driven
transitions (in_escrow, active, refund cancellation) happen through
/api/payments/escrow, never here.
"""
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from agrilease.core.auth import AuthContext, get_current_user
from agrilease.features.rentals import service as rental_service
from agrilease.models.rental import (
    ContractTermsUpdate,
    RejectBody,
    RentalRequest,
    RentalRequestCreate,
    RentalStatus,
)

router = APIRouter(prefix="/api/rental-requests", tags=["rental-requests"])


@router.post("", response_model=RentalRequest, status_code=201)
def create_rental_request(body: RentalRequestCreate, ctx: AuthContext = Depends(get_current_user)):
    return rental_service.create_request(ctx.user_id, body)


@router.get("", response_model=List[RentalRequest])
def list_rental_requests(
    role: Literal["farmer", "owner"] = Query("farmer"),
    status: Optional[RentalStatus] = Query(None),
    ctx: AuthContext = Depends(get_current_user),
):
    """Requests the caller made (role=farmer) or received (role=owner)."""
    if role == "owner":
        return rental_service.list_requests_for_owner(ctx.user_id, status)
    return rental_service.list_requests_for_farmer(ctx.user_id, status)


@router.get("/{request_id}", response_model=RentalRequest)
def get_rental_request(request_id: str, ctx: AuthContext = Depends(get_current_user)):
    return rental_service.get_request(request_id, ctx.user_id)


@router.post("/{request_id}/accept", response_model=RentalRequest)
def accept_rental_request(request_id: str, ctx: AuthContext = Depends(get_current_user)):
    return rental_service.accept_request(request_id, ctx.user_id)


@router.post("/{request_id}/reject", response_model=RentalRequest)
def reject_rental_request(
    request_id: str,
    body: RejectBody,
    ctx: AuthContext = Depends(get_current_user),
):
    return rental_service.reject_request(request_id, ctx.user_id, body.reason)


@router.post("/{request_id}/cancel", response_model=RentalRequest)
def cancel_rental_request(request_id: str, ctx: AuthContext = Depends(get_current_user)):
    return rental_service.cancel_request(request_id, ctx.user_id)


@router.post("/{request_id}/complete", response_model=RentalRequest)
def complete_rental_request(request_id: str, ctx: AuthContext = Depends(get_current_user)):
    return rental_service.complete_request(request_id, ctx.user_id)


@router.post("/{request_id}/contract", response_model=RentalRequest)
def set_contract_terms(
    request_id: str,
    body: ContractTermsUpdate,
    ctx: AuthContext = Depends(get_current_user),
):
    """Landowner sets final terms; setting contract_start_date locks them."""
    return rental_service.set_contract_terms(request_id, ctx.user_id, body)
