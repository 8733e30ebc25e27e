from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ListingStatus(str, Enum):
    AVAILABLE = "available"
    LEASED = "leased"
    INACTIVE = "inactive"


class Listing(BaseModel):
    model_config = ConfigDict(frozen=True)

    listing_id: str
    owner_id: str
    title: str
    region: str
    acreage: float
    rent_per_acre: int
    security_deposit: Optional[int] = None
    lease_duration_min: Optional[int] = None
    lease_duration_max: Optional[int] = None
    status: ListingStatus = ListingStatus.AVAILABLE
    created_at: Optional[datetime] = None


class ListingCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    region: str = Field(min_length=1, max_length=100)
    acreage: float = Field(gt=0)
    rent_per_acre: int = Field(gt=0, description="Minor units per acre per year")
    security_deposit: Optional[int] = Field(default=None, ge=0)
    lease_duration_min: Optional[int] = Field(default=None, ge=1, description="Months")
    lease_duration_max: Optional[int] = Field(default=None, ge=1, description="Months")

    @model_validator(mode="after")
    def _durations_ordered(self):
        if (
            self.lease_duration_min is not None
            and self.lease_duration_max is not None
            and self.lease_duration_min > self.lease_duration_max
        ):
            raise ValueError("lease_duration_min must not exceed lease_duration_max")
        return self
