from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from agrilease.models.rental import RentalStatus

DEFAULT_RELEASE_CONDITIONS = "Successful completion of rental agreement milestones"


class EscrowStatus(str, Enum):
    HOLD = "hold"
    RELEASED = "released"
    REFUNDED = "refunded"


class EscrowAction(str, Enum):
    RELEASE = "release"
    REFUND = "refund"


class Escrow(BaseModel):
    model_config = ConfigDict(frozen=True)

    escrow_id: str
    request_id: str
    amount: int
    currency: str
    status: EscrowStatus
    provider_hold_ref: str
    release_conditions: Optional[str] = None
    auto_release_date: Optional[datetime] = None
    pending_action: Optional[EscrowAction] = None
    claimed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != EscrowStatus.HOLD


class EscrowView(BaseModel):
    """Participant-facing escrow status."""
    model_config = ConfigDict(frozen=True)

    escrow: Escrow
    request_status: RentalStatus
    farmer_id: str
    land_owner_id: str
    provider_status: Optional[str] = None


class EscrowHold(BaseModel):
    model_config = ConfigDict(frozen=True)

    escrow: Escrow
    payment_id: str
    client_token: Optional[str] = None


class EscrowHoldRequest(BaseModel):
    request_id: str = Field(min_length=1)
    amount: int = Field(description="Minor units")
    release_conditions: Optional[str] = Field(default=None, max_length=2000)
    auto_release_date: Optional[datetime] = None


class EscrowActionRequest(BaseModel):
    escrow_id: str = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=2000)
