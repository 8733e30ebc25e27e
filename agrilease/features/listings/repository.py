from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, insert, select, update

from agrilease.core.clock import as_utc
from agrilease.core.database import listings
from agrilease.core.repository import BaseRepository
from agrilease.models.listing import Listing, ListingStatus


def _row_to_listing(row) -> Listing:
    return Listing(
        listing_id=row["listing_id"],
        owner_id=row["owner_id"],
        title=row["title"],
        region=row["region"],
        acreage=row["acreage"],
        rent_per_acre=row["rent_per_acre"],
        security_deposit=row["security_deposit"],
        lease_duration_min=row["lease_duration_min"],
        lease_duration_max=row["lease_duration_max"],
        status=ListingStatus(row["status"]),
        created_at=as_utc(row["created_at"]),
    )


class ListingRepository(BaseRepository[Listing]):
    def __init__(self, session):
        super().__init__(session, _row_to_listing)

    def get(self, listing_id: str) -> Optional[Listing]:
        return self._one(select(listings).where(listings.c.listing_id == listing_id))

    def insert(self, listing: Listing, now: datetime) -> Listing:
        values = listing.model_dump()
        values["status"] = listing.status.value
        values["created_at"] = now
        values["updated_at"] = now
        self.session.execute(insert(listings).values(**values))
        return self.get(listing.listing_id)

    def list_by_owner(self, owner_id: str) -> List[Listing]:
        return self._all(
            select(listings)
            .where(listings.c.owner_id == owner_id)
            .order_by(listings.c.created_at.desc())
        )

    def list_by_status(
        self,
        status: ListingStatus,
        region: Optional[str] = None,
        max_rent: Optional[int] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Listing]:
        clauses = [listings.c.status == status.value]
        if region:
            clauses.append(listings.c.region == region)
        if max_rent is not None:
            clauses.append(listings.c.rent_per_acre <= max_rent)
        return self._all(
            select(listings)
            .where(and_(*clauses))
            .order_by(listings.c.created_at.desc())
            .offset(skip)
            .limit(limit)
        )

    def set_status(self, listing_id: str, status: ListingStatus, now: datetime) -> None:
        self.session.execute(
            update(listings)
            .where(listings.c.listing_id == listing_id)
            .values(status=status.value, updated_at=now)
        )

    def compare_and_set_status(
        self,
        listing_id: str,
        from_statuses: Sequence[ListingStatus],
        to_status: ListingStatus,
        now: datetime,
    ) -> bool:
        return self._compare_and_swap(
            update(listings)
            .where(
                and_(
                    listings.c.listing_id == listing_id,
                    listings.c.status.in_([s.value for s in from_statuses]),
                )
            )
            .values(status=to_status.value, updated_at=now)
        )

    def lock_if_available(self, listing_id: str, now: datetime) -> bool:
        """Touch an available listing inside the caller's transaction.

        The row stays write-locked until commit, so concurrent hold
        transactions on one listing run their occupancy checks one at a time.
        """
        return self._compare_and_swap(
            update(listings)
            .where(
                and_(
                    listings.c.listing_id == listing_id,
                    listings.c.status == ListingStatus.AVAILABLE.value,
                )
            )
            .values(updated_at=now)
        )
