"""
Rental request state machine.

Every legal edge is declared once, with the triggers allowed to drive it.
User actions can never move a request into or out of in_escrow; those edges
belong to the escrow manager and are only taken inside its transactions.
"""

import logging
from datetime import datetime
from types import MappingProxyType
from typing import Any, FrozenSet, Mapping, Tuple

from agrilease.core.errors import InvalidStateTransitionError, NotFoundError
from agrilease.core.metrics import rental_transitions_total
from agrilease.features.rentals.repository import RentalRequestRepository
from agrilease.models.rental import RentalRequest, RentalStatus, Trigger

logger = logging.getLogger("agrilease")

S = RentalStatus

TRANSITIONS: Mapping[Tuple[RentalStatus, RentalStatus], FrozenSet[Trigger]] = MappingProxyType({
    (S.PENDING, S.ACCEPTED): frozenset({Trigger.USER}),
    (S.PENDING, S.REJECTED): frozenset({Trigger.USER}),
    (S.PENDING, S.CANCELLED): frozenset({Trigger.USER}),
    (S.ACCEPTED, S.CANCELLED): frozenset({Trigger.USER}),
    (S.ACCEPTED, S.IN_ESCROW): frozenset({Trigger.ESCROW}),
    (S.IN_ESCROW, S.ACTIVE): frozenset({Trigger.ESCROW}),
    (S.IN_ESCROW, S.CANCELLED): frozenset({Trigger.ESCROW}),
    (S.ACTIVE, S.COMPLETED): frozenset({Trigger.USER, Trigger.SYSTEM}),
})


def allowed_triggers(from_status: RentalStatus, to_status: RentalStatus) -> FrozenSet[Trigger]:
    return TRANSITIONS.get((from_status, to_status), frozenset())


def can_transition(from_status: RentalStatus, to_status: RentalStatus, trigger: Trigger) -> bool:
    return trigger in allowed_triggers(from_status, to_status)


def check_transition(from_status: RentalStatus, to_status: RentalStatus, trigger: Trigger) -> None:
    triggers = allowed_triggers(from_status, to_status)
    if trigger in triggers:
        return
    if from_status == S.IN_ESCROW and to_status == S.CANCELLED:
        raise InvalidStateTransitionError(
            "Request is in escrow; refund the escrow to cancel it "
            "(POST /api/payments/escrow/refund)",
            current_status=from_status.value,
        )
    if triggers:
        raise InvalidStateTransitionError(
            f"Transition {from_status.value} -> {to_status.value} cannot be driven by {trigger.value}",
            current_status=from_status.value,
        )
    raise InvalidStateTransitionError(
        f"Cannot move request from {from_status.value} to {to_status.value}",
        current_status=from_status.value,
    )


def transition(
    repo: RentalRequestRepository,
    request: RentalRequest,
    to_status: RentalStatus,
    trigger: Trigger,
    now: datetime,
    **values: Any,
) -> RentalRequest:
    """
    Move `request` to `to_status` with a compare-and-swap on its current status.

    Runs inside the caller's transaction. Raises InvalidStateTransitionError
    for illegal edges and for lost races (the row changed since it was read).
    """
    check_transition(request.status, to_status, trigger)
    swapped = repo.compare_and_set_status(request.request_id, request.status, to_status, now, **values)
    if not swapped:
        current = repo.get(request.request_id)
        if current is None:
            raise NotFoundError(f"Rental request {request.request_id} not found")
        raise InvalidStateTransitionError(
            f"Request changed concurrently (now {current.status.value})",
            current_status=current.status.value,
        )
    rental_transitions_total.inc(labels={
        "from_status": request.status.value,
        "to_status": to_status.value,
        "trigger": trigger.value,
    })
    logger.info(
        "rental.transition",
        extra={
            "rental_request_id": request.request_id,
            "from_status": request.status.value,
            "to_status": to_status.value,
            "trigger": trigger.value,
        },
    )
    return repo.get(request.request_id)
