from datetime import datetime
from typing import List, Optional

from marketplace.models.tracking_event import TrackingEventType
from marketplace.schemas.common import CamelModel, UserOut
from marketplace.schemas.match_schema import MatchOut, PackageOut


class TrackingEventOut(CamelModel):
    id: int
    package_id: int
    carrier_id: Optional[int] = None
    location: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    event_type: TrackingEventType
    timestamp: datetime
    next_carrier_id: Optional[int] = None
    match_id: Optional[int] = None
    carrier: Optional[UserOut] = None


class CheckpointIn(CamelModel):
    location: Optional[str] = None
    notes: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class TimelineEntry(CamelModel):
    status: str
    label: Optional[str] = None
    timestamp: Optional[datetime] = None
    completed: bool
    location: Optional[str] = None
    notes: Optional[str] = None
    carrier: Optional[UserOut] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class TrackingOut(CamelModel):
    package: PackageOut
    timeline: List[TimelineEntry]
    active_match: Optional[MatchOut] = None
    checkpoints_count: int
    estimated_delivery: Optional[datetime] = None
