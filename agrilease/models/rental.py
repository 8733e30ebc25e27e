"""
agrilease/models/rental.py

Rental request lifecycle models.

pending -> accepted -> in_escrow -> active -> completed
pending -> rejected
pending | accepted -> cancelled (either party)
in_escrow -> cancelled (escrow refund only)
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RentalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_ESCROW = "in_escrow"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RentalStatus.REJECTED, RentalStatus.COMPLETED, RentalStatus.CANCELLED})


class Trigger(str, Enum):
    """Who is allowed to drive a transition."""
    USER = "user"
    ESCROW = "escrow"
    SYSTEM = "system"


class ProposedTerms(BaseModel):
    model_config = ConfigDict(frozen=True)

    rent_per_acre: int = Field(gt=0)
    duration_months: int = Field(ge=1, le=600)
    start_date: Optional[date] = None
    message: Optional[str] = Field(default=None, max_length=2000)


class FinalTerms(BaseModel):
    model_config = ConfigDict(frozen=True)

    rent_per_acre: Optional[int] = Field(default=None, gt=0)
    contract_start_date: Optional[date] = None
    contract_end_date: Optional[date] = None
    contract_terms: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self.contract_start_date is not None


class RentalRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    listing_id: str
    farmer_id: str
    land_owner_id: str
    status: RentalStatus
    proposed_terms: ProposedTerms
    final_terms: Optional[FinalTerms] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.farmer_id, self.land_owner_id)


class RentalRequestCreate(BaseModel):
    listing_id: str = Field(min_length=1)
    proposed_terms: ProposedTerms


class RejectBody(BaseModel):
    reason: str = Field(default="", max_length=2000)


class ContractTermsUpdate(BaseModel):
    rent_per_acre: Optional[int] = Field(default=None, gt=0)
    contract_start_date: Optional[date] = None
    contract_end_date: Optional[date] = None
    contract_terms: Optional[str] = Field(default=None, max_length=20000)
