"""
Escrow API (deposit holds for rental requests).

- POST /api/payments/escrow/hold      pro tier or above, request accepted
- POST /api/payments/escrow/release   landowner captures the deposit
- POST /api/payments/escrow/refund    either participant cancels the hold
- GET  /api/payments/escrow/{escrow_id}
- GET  /api/payments/escrow           admin listing (X-Admin-Key)
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from agrilease.core.admin_auth import AdminActor, require_admin
from agrilease.core.auth import AuthContext, get_current_user, require_subscription
from agrilease.core.logging import log_event
from agrilease.features.escrow import service as escrow_service
from agrilease.models.escrow import (
    Escrow,
    EscrowActionRequest,
    EscrowHold,
    EscrowHoldRequest,
    EscrowStatus,
    EscrowView,
)
from agrilease.models.plan import Tier

router = APIRouter(prefix="/api/payments/escrow", tags=["escrow"])


class EscrowPage(BaseModel):
    escrows: List[Escrow]
    total: int
    page: int
    limit: int


@router.post("/hold", response_model=EscrowHold, status_code=201)
def create_hold(
    body: EscrowHoldRequest,
    ctx: AuthContext = Depends(require_subscription(Tier.PRO)),
):
    """
    Hold a deposit for an accepted rental request.

    Errors:
        400: amount below minimum / no payment method
        403: not a participant, or subscription below pro
        409: request is not accepted
        502/503: payment provider failure / unavailable
    """
    return escrow_service.create_hold(
        body.request_id,
        body.amount,
        ctx.user_id,
        release_conditions=body.release_conditions,
        auto_release_date=body.auto_release_date,
    )


@router.post("/release", response_model=Escrow)
def release_escrow(body: EscrowActionRequest, ctx: AuthContext = Depends(get_current_user)):
    return escrow_service.release(body.escrow_id, ctx.user_id, reason=body.reason)


@router.post("/refund", response_model=Escrow)
def refund_escrow(body: EscrowActionRequest, ctx: AuthContext = Depends(get_current_user)):
    return escrow_service.refund(body.escrow_id, ctx.user_id, reason=body.reason)


@router.get("", response_model=EscrowPage)
def list_escrows(
    status: Optional[EscrowStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: AdminActor = Depends(require_admin),
):
    escrows, total = escrow_service.list_escrows(status=status, page=page, limit=limit)
    log_event("info", "admin.escrows_listed", extra={"actor_id": actor.actor_id, "total": total})
    return EscrowPage(escrows=escrows, total=total, page=page, limit=limit)


@router.get("/{escrow_id}", response_model=EscrowView)
def get_escrow(escrow_id: str, ctx: AuthContext = Depends(get_current_user)):
    return escrow_service.get_status(escrow_id, ctx.user_id)
