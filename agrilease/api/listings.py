"""
Land listing API.

- POST  /api/listings                 landowner creates a listing
- GET   /api/listings                 available listings (region, max_rent filters)
- GET   /api/listings/{listing_id}
- PATCH /api/listings/{listing_id}/status   owner marks available/inactive
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from agrilease.core.auth import AuthContext, get_current_user
from agrilease.features.listings import service as listing_service
from agrilease.models.listing import Listing, ListingCreate, ListingStatus

router = APIRouter(prefix="/api/listings", tags=["listings"])


class ListingStatusUpdate(BaseModel):
    status: ListingStatus


@router.post("", response_model=Listing, status_code=201)
def create_listing(body: ListingCreate, ctx: AuthContext = Depends(get_current_user)):
    return listing_service.create_listing(ctx.user_id, body)


@router.get("", response_model=List[Listing])
def list_listings(
    region: Optional[str] = Query(None, max_length=100),
    max_rent: Optional[int] = Query(None, gt=0),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
):
    return listing_service.list_available(region=region, max_rent=max_rent, skip=skip, limit=limit)


@router.get("/{listing_id}", response_model=Listing)
def get_listing(listing_id: str):
    return listing_service.get_listing(listing_id)


@router.patch("/{listing_id}/status", response_model=Listing)
def update_listing_status(
    listing_id: str,
    body: ListingStatusUpdate,
    ctx: AuthContext = Depends(get_current_user),
):
    return listing_service.set_listing_status(ctx.user_id, listing_id, body.status)
