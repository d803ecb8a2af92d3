from datetime import datetime
from typing import Optional

from pydantic import Field

from marketplace.models.status import MatchStatus, PackageStatus
from marketplace.schemas.common import CamelModel, UserOut
from marketplace.schemas.payment_schema import PaymentOut


class PackageOut(CamelModel):
    id: int
    user_id: int
    description: Optional[str] = None
    sender_address: str
    pickup_address: Optional[str] = None
    recipient_address: str
    final_destination: Optional[str] = None
    current_location: Optional[str] = None
    status: PackageStatus
    is_multi_segment: bool = False
    segment_number: int = 1
    total_segments: int = 1
    price: Optional[float] = None
    weight: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RideOut(CamelModel):
    id: int
    user_id: int
    origin: str
    destination: str
    departure_time: Optional[datetime] = None
    price_per_kg: Optional[float] = None
    available_space: Optional[str] = None
    status: str
    allows_relay_pickup: bool = False
    allows_relay_dropoff: bool = False
    carrier: Optional[UserOut] = None


class MatchOut(CamelModel):
    id: int
    package_id: int
    ride_id: int
    status: MatchStatus
    price: Optional[float] = None
    is_relay_segment: bool = False
    segment_order: int = 1
    is_partial_delivery: bool = False
    dropoff_location: Optional[str] = None
    notes: Optional[str] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivery_confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    package: Optional[PackageOut] = None
    ride: Optional[RideOut] = None
    payment: Optional[PaymentOut] = None


class CreateMatchIn(CamelModel):
    package_id: int
    ride_id: Optional[int] = None
    price: Optional[float] = Field(None, ge=0)


class StatusIn(CamelModel):
    status: str


class AcceptRelayIn(CamelModel):
    transfer_code: Optional[str] = None
