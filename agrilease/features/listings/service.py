"""
Land listing service.
- create_listing(owner_id, data)  landowners only
- get_listing(listing_id)
- list_available(region, max_rent)
- set_listing_status(owner_id, listing_id, status)  owner toggles available/inactive
"""

from typing import List, Optional
from uuid import uuid4

from agrilease.core.clock import utc_now
from agrilease.core.database import get_db_session
from agrilease.core.errors import NotFoundError, PermissionError, ValidationError
from agrilease.core.logging import log_event
from agrilease.features.listings.repository import ListingRepository
from agrilease.features.rentals.repository import RentalRequestRepository
from agrilease.features.users.repository import UserRepository
from agrilease.models.listing import Listing, ListingCreate, ListingStatus
from agrilease.models.user import UserRole

_OWNER_ROLES = (UserRole.LANDOWNER, UserRole.BOTH)


def create_listing(owner_id: str, data: ListingCreate) -> Listing:
    with get_db_session() as session:
        owner = UserRepository(session).get(owner_id)
        if owner is None:
            raise NotFoundError(f"User {owner_id} not found")
        if owner.role not in _OWNER_ROLES:
            raise PermissionError("Only landowners can create listings")

        listing = Listing(
            listing_id=str(uuid4()),
            owner_id=owner_id,
            status=ListingStatus.AVAILABLE,
            **data.model_dump(),
        )
        created = ListingRepository(session).insert(listing, utc_now())

    log_event("info", "listing.created", user_id=owner_id, extra={"listing_id": created.listing_id})
    return created


def get_listing(listing_id: str) -> Listing:
    with get_db_session() as session:
        listing = ListingRepository(session).get(listing_id)
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    return listing


def list_available(
    region: Optional[str] = None,
    max_rent: Optional[int] = None,
    skip: int = 0,
    limit: int = 50,
) -> List[Listing]:
    with get_db_session() as session:
        return ListingRepository(session).list_by_status(
            ListingStatus.AVAILABLE, region=region, max_rent=max_rent, skip=skip, limit=limit
        )


def set_listing_status(owner_id: str, listing_id: str, status: ListingStatus) -> Listing:
    if status == ListingStatus.LEASED:
        raise ValidationError("Listings become leased through an escrow release")
    with get_db_session() as session:
        repo = ListingRepository(session)
        listing = repo.get(listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        if listing.owner_id != owner_id:
            raise PermissionError("Only the listing owner can change its status")
        if listing.status == ListingStatus.LEASED:
            raise ValidationError("A leased listing cannot change status until the lease completes")
        if RentalRequestRepository(session).occupying_listing(listing_id):
            raise ValidationError("A listing with a deposit in escrow cannot change status")
        repo.set_status(listing_id, status, utc_now())
        return repo.get(listing_id)
