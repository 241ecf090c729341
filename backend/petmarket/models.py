from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


RequestStatus = Literal["pending", "accepted", "completed", "cancelled", "rejected"]


class ServiceType(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    icon: str = ""
    credit_value: int = 0
    description: Optional[str] = None
    created_at: Optional[str] = None


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: Optional[str] = None


class AvailabilitySchedule(BaseModel):
    days: list[str] = Field(default_factory=list)
    hours: str = ""
    notes: str = ""
    # Carries the date folded in from deprecated start_time inputs.
    scheduled_date: Optional[str] = None


class ServiceListing(BaseModel):
    id: str
    title: str
    description: str = ""
    provider_id: str
    service_type_id: str
    price: Optional[float] = None
    location: Optional[GeoPoint] = None
    availability_schedule: AvailabilitySchedule = Field(default_factory=AvailabilitySchedule)
    is_active: bool = True
    created_at: str
    updated_at: Optional[str] = None


class ServiceRequest(BaseModel):
    id: str
    requester_id: str
    provider_id: str
    service_type_id: str
    service_listing_id: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    status: RequestStatus = "pending"
    scheduled_date: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None


class ListingCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    service_type_id: str = Field(min_length=1)
    price: Optional[float] = Field(default=None, ge=0)
    location: Optional[GeoPoint] = None
    availability_schedule: AvailabilitySchedule = Field(default_factory=AvailabilitySchedule)


class ListingUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    service_type_id: Optional[str] = Field(default=None, min_length=1)
    price: Optional[float] = Field(default=None, ge=0)
    location: Optional[GeoPoint] = None
    availability_schedule: Optional[AvailabilitySchedule] = None
    is_active: Optional[bool] = None


class RequestCreate(BaseModel):
    provider_id: str = Field(min_length=1)
    service_type_id: str = Field(min_length=1)
    service_listing_id: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    scheduled_date: Optional[str] = None


class ListingFilter(BaseModel):
    service_type_id: Optional[str] = None
    location: Optional[GeoPoint] = None
    radius_km: Optional[float] = Field(default=None, gt=0)
    provider_ids: Optional[list[str]] = None
    include_inactive: bool = False


class RequestFilter(BaseModel):
    statuses: Optional[list[RequestStatus]] = None
    service_type_id: Optional[str] = None


class RequestQuery(RequestFilter):
    as_provider: bool = True


class ProviderStats(BaseModel):
    total_listings: int = 0
    active_listings: int = 0
    pending_requests: int = 0
    accepted_requests: int = 0
    completed_requests: int = 0
