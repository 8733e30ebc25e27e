from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, insert, select, update

from agrilease.core.clock import as_utc
from agrilease.core.database import rental_requests
from agrilease.core.repository import BaseRepository
from agrilease.models.rental import FinalTerms, ProposedTerms, RentalRequest, RentalStatus

OCCUPYING_STATUSES = (RentalStatus.IN_ESCROW, RentalStatus.ACTIVE)


def _row_to_request(row) -> RentalRequest:
    final = row["final_terms"]
    return RentalRequest(
        request_id=row["request_id"],
        listing_id=row["listing_id"],
        farmer_id=row["farmer_id"],
        land_owner_id=row["land_owner_id"],
        status=RentalStatus(row["status"]),
        proposed_terms=ProposedTerms.model_validate(row["proposed_terms"]),
        final_terms=FinalTerms.model_validate(final) if final else None,
        rejection_reason=row["rejection_reason"],
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
        responded_at=as_utc(row["responded_at"]),
        completed_at=as_utc(row["completed_at"]),
    )


class RentalRequestRepository(BaseRepository[RentalRequest]):
    def __init__(self, session):
        super().__init__(session, _row_to_request)

    def get(self, request_id: str) -> Optional[RentalRequest]:
        return self._one(select(rental_requests).where(rental_requests.c.request_id == request_id))

    def insert(self, request: RentalRequest, now: datetime) -> RentalRequest:
        self.session.execute(
            insert(rental_requests).values(
                request_id=request.request_id,
                listing_id=request.listing_id,
                farmer_id=request.farmer_id,
                land_owner_id=request.land_owner_id,
                status=request.status.value,
                proposed_terms=request.proposed_terms.model_dump(mode="json"),
                final_terms=None,
                created_at=now,
                updated_at=now,
            )
        )
        return self.get(request.request_id)

    def list_for_farmer(self, farmer_id: str, status: Optional[RentalStatus] = None) -> List[RentalRequest]:
        return self._list(rental_requests.c.farmer_id == farmer_id, status)

    def list_for_owner(self, land_owner_id: str, status: Optional[RentalStatus] = None) -> List[RentalRequest]:
        return self._list(rental_requests.c.land_owner_id == land_owner_id, status)

    def _list(self, participant_clause, status: Optional[RentalStatus]) -> List[RentalRequest]:
        clauses = [participant_clause]
        if status is not None:
            clauses.append(rental_requests.c.status == status.value)
        return self._all(
            select(rental_requests)
            .where(and_(*clauses))
            .order_by(rental_requests.c.created_at.desc())
        )

    def compare_and_set_status(
        self,
        request_id: str,
        from_status: RentalStatus,
        to_status: RentalStatus,
        now: datetime,
        **values: Any,
    ) -> bool:
        """UPDATE ... SET status=:to WHERE status=:from. False if the row moved on."""
        return self._compare_and_swap(
            update(rental_requests)
            .where(
                and_(
                    rental_requests.c.request_id == request_id,
                    rental_requests.c.status == from_status.value,
                )
            )
            .values(status=to_status.value, updated_at=now, **values)
        )

    def set_final_terms_if_unlocked(
        self,
        request_id: str,
        allowed_statuses: Sequence[RentalStatus],
        final_terms: FinalTerms,
        now: datetime,
    ) -> bool:
        """Write final terms unless they are locked or the request left allowed_statuses."""
        values: Dict[str, Any] = {
            "final_terms": final_terms.model_dump(mode="json"),
            "updated_at": now,
        }
        if final_terms.locked:
            values["terms_locked_at"] = now
        return self._compare_and_swap(
            update(rental_requests)
            .where(
                and_(
                    rental_requests.c.request_id == request_id,
                    rental_requests.c.terms_locked_at.is_(None),
                    rental_requests.c.status.in_([s.value for s in allowed_statuses]),
                )
            )
            .values(**values)
        )

    def occupying_listing(self, listing_id: str, exclude_request_id: Optional[str] = None) -> List[RentalRequest]:
        """Requests holding the listing: deposit in escrow or tenancy active."""
        clauses = [
            rental_requests.c.listing_id == listing_id,
            rental_requests.c.status.in_([s.value for s in OCCUPYING_STATUSES]),
        ]
        if exclude_request_id is not None:
            clauses.append(rental_requests.c.request_id != exclude_request_id)
        return self._all(select(rental_requests).where(and_(*clauses)))
