from datetime import datetime
from typing import List, Optional

from marketplace.models.tracking_event import TrackingEvent
from marketplace.schemas.common import CamelModel, UserOut
from marketplace.schemas.match_schema import RideOut


class CreateRelayIn(CamelModel):
    dropoff_location: Optional[str] = None
    next_carrier_id: Optional[int] = None
    transfer_code: Optional[str] = None
    estimated_arrival: Optional[datetime] = None
    notes: Optional[str] = None


class RelayRecord(CamelModel):
    id: int
    match_id: Optional[int] = None
    segment_order: Optional[int] = None
    dropoff_location: str
    transfer_code: Optional[str] = None
    notes: Optional[str] = None
    status: str
    created_at: datetime
    estimated_arrival: Optional[datetime] = None
    carrier: Optional[UserOut] = None
    next_carrier: Optional[UserOut] = None

    @classmethod
    def from_event(cls, ev: TrackingEvent, viewer_id: int) -> "RelayRecord":
        """The transfer code is shown only to the handing carrier and the package owner."""
        match = ev.match
        code_visible = viewer_id in (ev.carrier_id, ev.package.user_id)
        return cls(
            id=ev.id,
            match_id=ev.match_id,
            segment_order=match.segment_order if match else None,
            dropoff_location=ev.location,
            transfer_code=ev.transfer_code if code_visible else None,
            notes=ev.notes,
            status=match.status.value if match else "PENDING",
            created_at=ev.timestamp,
            estimated_arrival=match.ride.departure_time if match and match.ride else None,
            carrier=UserOut.model_validate(ev.carrier) if ev.carrier else None,
            next_carrier=UserOut.model_validate(ev.next_carrier) if ev.next_carrier else None,
        )


class RelayProposalOut(CamelModel):
    id: int
    package_id: int
    package_description: Optional[str] = None
    dropoff_location: str
    final_destination: str
    current_location: Optional[str] = None
    current_carrier: Optional[UserOut] = None
    estimated_pickup_time: Optional[datetime] = None
    notes: Optional[str] = None
    status: str
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: dict) -> "RelayProposalOut":
        match, transfer = entry["match"], entry["transfer"]
        package = match.package
        return cls(
            id=match.id,
            package_id=package.id,
            package_description=package.description,
            dropoff_location=match.ride.origin,
            final_destination=package.destination,
            current_location=package.current_location,
            current_carrier=UserOut.model_validate(transfer.carrier) if transfer and transfer.carrier else None,
            estimated_pickup_time=match.ride.departure_time,
            notes=match.notes,
            status=match.status.value,
            created_at=match.created_at,
        )


class CarrierStats(CamelModel):
    completed_deliveries: int
    total_deliveries: int
    success_rate: int
    relay_experience: int


class RelayCarrierOut(UserOut):
    email: str
    phone_number: Optional[str] = None
    is_verified: bool
    stats: CarrierStats
    upcoming_rides: List[RideOut]

    @classmethod
    def from_entry(cls, entry: dict) -> "RelayCarrierOut":
        c = entry["carrier"]
        return cls(
            id=c.id,
            first_name=c.first_name,
            last_name=c.last_name,
            company_name=c.company_name,
            role=c.role,
            email=c.email,
            phone_number=c.phone_number,
            is_verified=c.is_verified,
            stats=CarrierStats(**entry["stats"]),
            upcoming_rides=[RideOut.model_validate(r) for r in entry["upcoming_rides"]],
        )
